import sys

from onramp.cli import main

sys.exit(main())
