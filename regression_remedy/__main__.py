import sys

from regression_remedy.cli import main

if __name__ == "__main__":
    sys.exit(main())
