import sys

from appdriver.cli import main

sys.exit(main())
