"""RPG Keeper — command line launcher (see rpg_keeper.cli for subcommands)."""

import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

from rpg_keeper.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
