#!/usr/bin/env python3
"""
SHADOWSWAP CLI

Operator command-line interface: configuration, Merkle tooling, privacy
parameter generation, claim keys and signatures, and a local end-to-end
simulation of both ledgers plus the relayer.

Usage:
    shadowswap <command> [subcommand] [options]

Commands:
    config      Configuration management
    merkle      Root, proof and verification for leaf lists
    privacy     Generate intent privacy parameters
    keys        Generate Ed25519 claim keys
    claim       Sign claim authorizations
    simulate    Run a local create -> fill -> settle -> claim flow
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

__version__ = "0.3.0"


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return _format_table(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:66] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class ShadowswapCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="shadowswap",
            description="SHADOWSWAP cross-chain intent settlement CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"shadowswap {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML config file to load before running the command",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        self._register_config_commands()
        self._register_merkle_commands()
        self._register_privacy_commands()
        self._register_keys_commands()
        self._register_claim_commands()
        simulate = self.subparsers.add_parser("simulate", help="Run a local end-to-end flow")
        simulate.add_argument("--amount", "-a", type=int, default=1000, help="Intent amount in base units")
        simulate.add_argument("--deadline-hours", type=int, default=6, help="Intent deadline from now")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., protocol.fee_bps)")

        set_cmd = config_sub.add_parser("set", help="Set configuration value")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set (YAML scalar)")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_merkle_commands(self) -> None:
        merkle = self.subparsers.add_parser("merkle", help="Merkle accumulator tooling")
        merkle_sub = merkle.add_subparsers(dest="subcommand")

        root = merkle_sub.add_parser("root", help="Compute the root of a leaf list")
        root.add_argument("leaves", nargs="*", help="32-byte hex leaves in insertion order")

        proof = merkle_sub.add_parser("proof", help="Generate an inclusion proof")
        proof.add_argument("--index", "-i", type=int, required=True, help="Leaf index")
        proof.add_argument("leaves", nargs="+", help="32-byte hex leaves in insertion order")

        verify = merkle_sub.add_parser("verify", help="Verify an inclusion proof")
        verify.add_argument("--leaf", required=True)
        verify.add_argument("--root", required=True)
        verify.add_argument("--proof", required=True, help="Comma-separated sibling hashes")

    def _register_privacy_commands(self) -> None:
        privacy = self.subparsers.add_parser("privacy", help="Privacy parameters")
        privacy_sub = privacy.add_subparsers(dest="subcommand")

        generate = privacy_sub.add_parser("generate", help="Generate secret, nullifier and commitment")
        generate.add_argument("--user", "-u", required=True, help="Depositor address")
        generate.add_argument("--token", "-t", required=True, help="Destination token address")
        generate.add_argument("--amount", "-a", type=int, required=True, help="Destination amount")
        generate.add_argument("--source-chain", "-s", type=int, required=True, help="Source chain id")

    def _register_keys_commands(self) -> None:
        keys = self.subparsers.add_parser("keys", help="Claim key management")
        keys_sub = keys.add_subparsers(dest="subcommand")

        generate = keys_sub.add_parser("generate", help="Generate an Ed25519 claim key (JWK)")
        generate.add_argument("--kid", default="claim-1", help="Key id")
        generate.add_argument("--out", "-o", help="Write the private JWK to this file")

    def _register_claim_commands(self) -> None:
        claim = self.subparsers.add_parser("claim", help="Claim authorizations")
        claim_sub = claim.add_subparsers(dest="subcommand")

        sign = claim_sub.add_parser("sign", help="Sign a claim authorization")
        sign.add_argument("--key", "-k", required=True, help="Private JWK file")
        sign.add_argument("--dest-chain", type=int, required=True, help="Destination chain id")
        sign.add_argument("--intent-id", required=True)
        sign.add_argument("--nullifier", required=True)
        sign.add_argument("--recipient", help="Recipient address (default: the key's address)")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        from shadowswap.config import ConfigError
        from shadowswap.hardening import BridgeError

        try:
            if parsed.config:
                from shadowswap.config import get_config_manager
                get_config_manager().load_from_file(parsed.config)

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))
            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except BridgeError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 2

        except (ConfigError, OSError, ValueError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip())

        return handler(args)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from shadowswap.config import get_config_manager
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        from shadowswap.config import get_config_manager
        mgr = get_config_manager()
        value = yaml.safe_load(args.value)
        mgr.set(args.path, value)
        return {"path": args.path, "value": mgr.get(args.path), "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from shadowswap.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from shadowswap.config import get_config_manager
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("; ".join(errors))
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from shadowswap.config import get_config_manager
        return get_config_manager().export_schema()

    # Merkle handlers
    def _handle_merkle_root(self, args: argparse.Namespace) -> Any:
        from shadowswap.merkle import HASH_RULE_VERSION, compute_root
        return {"root": compute_root(args.leaves), "size": len(args.leaves), "hash_rule": HASH_RULE_VERSION}

    def _handle_merkle_proof(self, args: argparse.Namespace) -> Any:
        from shadowswap.merkle import compute_root, generate_proof
        return {
            "leaf": args.leaves[args.index] if 0 <= args.index < len(args.leaves) else None,
            "index": args.index,
            "root": compute_root(args.leaves),
            "proof": generate_proof(args.leaves, args.index),
        }

    def _handle_merkle_verify(self, args: argparse.Namespace) -> Any:
        from shadowswap.merkle import verify
        ok = verify(args.leaf, args.root, _split_csv(args.proof))
        if not ok:
            raise CLIError("proof does not verify", exit_code=3)
        return {"valid": True}

    # Privacy handlers
    def _handle_privacy_generate(self, args: argparse.Namespace) -> Any:
        from shadowswap.field import generate_privacy_params
        params = generate_privacy_params(args.user, args.token, args.amount, args.source_chain)
        return params.to_dict()

    # Key handlers
    def _handle_keys_generate(self, args: argparse.Namespace) -> Any:
        from shadowswap.claims import generate_ed25519_jwk
        jwk = generate_ed25519_jwk(args.kid)
        if args.out:
            Path(args.out).write_text(json.dumps(jwk, indent=2) + "\n", encoding="utf-8")
            return {"kid": jwk["kid"], "x": jwk["x"], "address": jwk["address"], "path": args.out}
        return jwk

    # Claim handlers
    def _handle_claim_sign(self, args: argparse.Namespace) -> Any:
        from shadowswap.claims import load_private_key_from_jwk, sign_claim
        jwk = json.loads(Path(args.key).read_text(encoding="utf-8"))
        priv, address = load_private_key_from_jwk(jwk)
        recipient = args.recipient or address
        auth = sign_claim(priv, args.dest_chain, args.intent_id, args.nullifier, recipient)
        return {"recipient": recipient, **auth.to_dict()}

    # Simulation
    def _handle_simulate(self, args: argparse.Namespace) -> Any:
        return run_simulation(amount=args.amount, deadline_hours=args.deadline_hours)


def run_simulation(amount: int = 1000, deadline_hours: int = 6) -> Dict[str, Any]:
    """Create, register, fill, settle and claim one intent on local ledgers."""
    from shadowswap import intent_pool, ledger, settlement
    from shadowswap.claims import generate_ed25519_jwk, load_private_key_from_jwk, sign_claim
    from shadowswap.field import generate_privacy_params
    from shadowswap.relayer import Relayer
    from shadowswap.sealing import ClaimSecret, seal_claim_secret

    def addr(n: int) -> str:
        return "0x" + f"{n:040x}"

    owner, relayer_id, collector = addr(1), addr(2), addr(3)
    user, solver = addr(10), addr(11)
    token_src, token_dst = addr(100), addr(200)
    source_chain, dest_chain = 11155111, 5003

    clock = ledger.ManualClock()
    source = intent_pool.SourceLedger(source_chain, owner, relayer_id, collector, clock=clock)
    destination = settlement.DestinationLedger(dest_chain, owner, relayer_id, collector, clock=clock)
    ledger.add_token(source, owner, token_src, 1, 10 ** 30, 18)
    ledger.add_token(destination, owner, token_dst, 1, 10 ** 30, 18)
    ledger.mint(source, token_src, user, amount)
    ledger.mint(destination, token_dst, solver, amount)

    params = generate_privacy_params(user, token_dst, amount, source_chain)
    intent_pool.create_intent(
        source, user, params.intent_id, params.commitment,
        token_src, amount, token_dst, amount, dest_chain, user,
        deadline=clock.now() + deadline_hours * 3600,
    )

    relayer = Relayer(relayer_id, source, destination)
    priv, recipient = load_private_key_from_jwk(generate_ed25519_jwk())
    auth = sign_claim(priv, dest_chain, params.intent_id, params.nullifier, recipient)
    claim = ClaimSecret(params.secret, params.nullifier, recipient, auth)
    relayer.submit_sealed_secret(params.intent_id, seal_claim_secret(relayer.public_key, params.intent_id, claim))

    first = relayer.run_once()

    registered = settlement.get_intent_params(destination, params.intent_id)
    if registered is None:
        raise CLIError("intent was not registered", exit_code=4)
    settlement.fill_intent(
        destination, solver, params.intent_id, registered.commitment,
        registered.token, registered.amount, registered.source_chain,
    )
    second = relayer.run_once()

    return {
        "intent_id": params.intent_id,
        "source_status": intent_pool.intent_status(source, params.intent_id).value,
        "destination_status": settlement.intent_status(destination, params.intent_id).value,
        "solver_reimbursed": ledger.balance_of(source, token_src, solver),
        "recipient_received": ledger.balance_of(destination, token_dst, recipient),
        "source_fees": ledger.balance_of(source, token_src, collector),
        "destination_fees": ledger.balance_of(destination, token_dst, collector),
        "passes": [first.to_dict(), second.to_dict()],
        "metrics": relayer.get_metrics(),
    }


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = ShadowswapCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
