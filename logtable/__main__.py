import sys

from logtable.cli import main

sys.exit(main())
