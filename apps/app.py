import sys
from homecontrol.runtime import main

if __name__ == "__main__":
    sys.exit(main())
