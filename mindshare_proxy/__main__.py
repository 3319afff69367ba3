import sys

from mindshare_proxy.server import main

sys.exit(main())
