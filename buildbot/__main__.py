# buildbot/__main__.py
import sys

from buildbot.cli import main

sys.exit(main())
