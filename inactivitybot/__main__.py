from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv

# Load .env before the bot modules read the environment at import time.
load_dotenv(Path.cwd() / ".env")

from .bot import main  # noqa: E402

if __name__ == "__main__":
    main()
