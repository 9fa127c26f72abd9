import socket
import struct

# Python's socket module does not have these constants
SO_ORIGINAL_DST = 80
SOL_IPV6 = 41


def original_addr(csock: socket.socket) -> tuple[str, int]:
    """
    Ask netfilter where a REDIRECTed connection was headed before it was
    diverted to us. Raises OSError if the connection was not redirected.
    """
    # The family of the socket is not enough to pick the right option: an AF_INET6
    # socket may carry an IPv4-mapped address (::ffff:10.0.0.1), which netfilter
    # tracks as IPv4. Calling the wrong variant can crash the interpreter.
    is_ipv4 = "." in csock.getsockname()[0]
    if is_ipv4:
        # struct sockaddr_in, requested with the size of the larger sockaddr.
        dst = csock.getsockopt(socket.SOL_IP, SO_ORIGINAL_DST, 16)
        port, raw_ip = struct.unpack_from("!2xH4s", dst)
        ip = socket.inet_ntop(socket.AF_INET, raw_ip)
    else:
        dst = csock.getsockopt(SOL_IPV6, SO_ORIGINAL_DST, 28)
        port, raw_ip = struct.unpack_from("!2xH4x16s", dst)
        ip = socket.inet_ntop(socket.AF_INET6, raw_ip)
    return ip, port
