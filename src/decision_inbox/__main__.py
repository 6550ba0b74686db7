"""Entry point for running the decision inbox as a module.

Usage:
    python -m decision_inbox validate-config
    python -m decision_inbox --help
"""

from decision_inbox.cli import main

if __name__ == "__main__":
    main()
