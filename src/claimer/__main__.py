import sys

from claimer.runner import main

if __name__ == "__main__":
    sys.exit(main())
