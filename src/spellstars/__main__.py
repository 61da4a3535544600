"""Main entry point for the sync service."""
from spellstars.app import main

if __name__ == "__main__":
    main()
