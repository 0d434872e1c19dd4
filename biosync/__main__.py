import sys

from biosync.cli import main

sys.exit(main())
