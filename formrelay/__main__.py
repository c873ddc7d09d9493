import sys

from formrelay.cli import main

sys.exit(main())
