import sys

from factoryvm import cli

sys.exit(cli.main())
