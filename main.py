"""
orbminer - CLI Entrypoint
=========================

Commands:
    python main.py run --dry-run --max-iterations 5
    python main.py status
    python main.py claim
    python main.py stake 25
    python main.py setup-automation
    python main.py close-automation
"""

from orbminer.cli import app


if __name__ == "__main__":
    app()
