import sys

from tradebook.cli import main

sys.exit(main())
