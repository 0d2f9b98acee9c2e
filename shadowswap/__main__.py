import sys

from shadowswap.cli import main

sys.exit(main())
