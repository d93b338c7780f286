import sys

from releaseguard.cli import main

sys.exit(main())
