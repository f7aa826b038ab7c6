"""Entry point for running the tracker as a module.

Usage:
    python -m rfq_tracker validate-config
    python -m rfq_tracker --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from rfq_tracker.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
