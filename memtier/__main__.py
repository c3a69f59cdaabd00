import sys

from memtier.cli import main

sys.exit(main())
