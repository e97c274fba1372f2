import sys

from k8s_snapshotter.cli import main

sys.exit(main())
