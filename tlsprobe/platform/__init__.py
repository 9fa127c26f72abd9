import re
import socket
import sys
from typing import Callable
from typing import Optional

original_addr: Optional[Callable[[socket.socket], tuple[str, int]]]
"""
Get the destination a redirected socket was originally connected to.
This function will be None if redirection is not supported on this platform.
"""

if re.match(r"linux(?:2)?", sys.platform):
    from . import linux

    original_addr = linux.original_addr
else:
    original_addr = None

__all__ = ["original_addr"]
