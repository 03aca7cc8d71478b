import sys

from achroot import cli

if __name__ == "__main__":
    sys.exit(cli.main())
