import sys

from xenbackup.cli import main

sys.exit(main())
