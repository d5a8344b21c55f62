import sys

from ci_pipeline.main import main

sys.exit(main())
