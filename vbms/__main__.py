import sys

from vbms.app import main

sys.exit(main())
