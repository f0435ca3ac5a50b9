#
# Copyright contributors to the sqlserver-agent project
#
import sys

from .service import main

sys.exit(main())
