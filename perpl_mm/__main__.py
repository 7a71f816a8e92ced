import sys

from perpl_mm.main import main

sys.exit(main())
