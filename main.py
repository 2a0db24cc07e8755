import sys

from classclock.entrypoint import main


if __name__ == "__main__":
    sys.exit(main())
