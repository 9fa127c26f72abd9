import ipaddress

_SIZE_UNITS = ("k", "m", "g", "t")


def pretty_size(size: int) -> str:
    """
    Byte count for log lines: 512b, 1.5k, 100m. Never longer than five characters.
    """
    if size < 1024:
        return f"{size}b"
    value = float(size)
    for unit in _SIZE_UNITS:
        value /= 1024
        if value < 1024:
            break
    if value < 99.95:
        return f"{value:.1f}{unit}"
    return f"{value:.0f}{unit}"


def format_address(address: tuple | None) -> str:
    """
    Render a socket address as host:port. IPv6 hosts are bracketed, IPv4-mapped
    ones are shown as plain IPv4 and wildcard hosts as *.
    """
    if address is None:
        return "<no address>"
    host, port = address[0], address[1]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return f"{host}:{port}"
    if ip.is_unspecified:
        return f"*:{port}"
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is None:
            return f"[{ip}]:{port}"
        ip = ip.ipv4_mapped
    return f"{ip}:{port}"
