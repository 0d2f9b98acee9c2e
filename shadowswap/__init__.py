"""
SHADOWSWAP: Private Cross-Chain Intent Settlement

A user deposits an asset on a source ledger and receives the equivalent
asset on a destination ledger. The secret linking deposit and payout is
revealed only at claim time, and the two ledgers never trust each other
directly: a relayer copies Merkle roots between them.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        SHADOWSWAP PROTOCOL                               │
    │                                                                          │
    │  COORDINATION                                                            │
    │    relayer.py       Root sync channels, event mirrors, relayer passes    │
    │                                                                          │
    │  LEDGERS                                                                 │
    │    intent_pool.py   Source ledger: escrow, commitments, settle, refund   │
    │    settlement.py    Destination ledger: register, fill, claim            │
    │    ledger.py        Shared scaffolding: custody, roots, pause, atomic    │
    │    registry.py      Token allow-list with amount bounds                  │
    │                                                                          │
    │  PRIMITIVES                                                              │
    │    merkle.py        Sorted-pair Merkle accumulator                       │
    │    field.py         Field hash, commitments, nullifiers                  │
    │    claims.py        Ed25519 claim authorizations                         │
    │    sealing.py       Claim secrets sealed to the relayer key              │
    │                                                                          │
    │  AMBIENT                                                                 │
    │    hardening.py  config.py  observability.py  events.py  cli.py          │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Commitment: H(secret, nullifier, amount, sourceChain). Stored publicly on
    the source ledger and proven into the destination ledger.

    Nullifier: H(secret, tag). Revealed at claim time; each nullifier pays out
    at most once.

    Fill: a solver's destination-side deposit for a registered intent. The
    fill tree's root, synced back to the source ledger, proves the fill and
    releases the source escrow to the solver.

Design Principles
─────────────────

    Exactly Once: intents settle or refund once, fills are claimed once.
    Terminal flags are the concurrency control.

    All or Nothing: every ledger operation either completes with all its
    effects and events, or fails with a named error and no effect.

    Recoverable Custody: pause never blocks refunds or claims.
"""

__version__ = "0.3.0"

# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import SHADOWSWAP modules on first access."""

    if name in ("hash_fields", "set_hash_primitive", "generate_privacy_params",
                "compute_commitment", "derive_nullifier", "PrivacyParams"):
        from shadowswap import field
        return getattr(field, name)

    if name in ("MerkleAccumulator", "compute_root", "generate_proof", "verify", "hash_pair"):
        from shadowswap import merkle
        return getattr(merkle, name)

    if name in ("SourceLedger", "Intent", "IntentStatus"):
        from shadowswap import intent_pool
        return getattr(intent_pool, name)

    if name in ("DestinationLedger", "IntentParams", "Fill", "FillStatus"):
        from shadowswap import settlement
        return getattr(settlement, name)

    if name in ("ManualClock", "SystemClock", "ProtocolParams"):
        from shadowswap import ledger
        return getattr(ledger, name)

    if name in ("Relayer", "RelayerReport", "RelayerMetrics", "RootSyncChannel", "RootSyncRecord"):
        from shadowswap import relayer
        return getattr(relayer, name)

    if name in ("ClaimAuthorization", "sign_claim", "verify_claim"):
        from shadowswap import claims
        return getattr(claims, name)

    if name in ("ClaimSecret", "SealingKey", "seal_claim_secret"):
        from shadowswap import sealing
        return getattr(sealing, name)

    if name in ("BridgeError", "ErrorCode", "ErrorCategory"):
        from shadowswap import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'shadowswap' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Primitives
    "hash_fields",
    "set_hash_primitive",
    "generate_privacy_params",
    "compute_commitment",
    "derive_nullifier",
    "PrivacyParams",
    "MerkleAccumulator",
    "compute_root",
    "generate_proof",
    "verify",
    "hash_pair",
    # Ledgers
    "SourceLedger",
    "Intent",
    "IntentStatus",
    "DestinationLedger",
    "IntentParams",
    "Fill",
    "FillStatus",
    "ManualClock",
    "SystemClock",
    "ProtocolParams",
    # Relayer
    "Relayer",
    "RelayerReport",
    "RelayerMetrics",
    "RootSyncChannel",
    "RootSyncRecord",
    # Claims
    "ClaimAuthorization",
    "sign_claim",
    "verify_claim",
    "ClaimSecret",
    "SealingKey",
    "seal_claim_secret",
    # Errors
    "BridgeError",
    "ErrorCode",
    "ErrorCategory",
]
