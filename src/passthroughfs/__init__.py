"""
passthroughfs — a FUSE filesystem that mirrors a directory.

Every request on the mount point is relayed to the matching path or open
descriptor of a source directory, with results and errors passed back
unchanged.
"""

import os

__version__ = "0.1.0"

PASSTHROUGHFS_HOME = os.environ.get("PASSTHROUGHFS_HOME", "~/.passthroughfs")
