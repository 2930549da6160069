import sys

from structgen.main import main

sys.exit(main())
