import sys

from fare_settlement.settlement.cli import main

sys.exit(main())
