import sys

from table_loader.cli import main

if __name__ == "__main__":
    sys.exit(main())
