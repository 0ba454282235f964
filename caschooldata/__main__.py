import sys

from caschooldata.cli import main

sys.exit(main())
