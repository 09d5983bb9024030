import sys

from carsharing.cli import main

sys.exit(main())
