import sys

from wrasse.main import main

sys.exit(main())
