import sys

from bulkload.main import main

sys.exit(main())
