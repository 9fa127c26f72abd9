VERSION = "0.3.0"
TLSPROBE = "tlsprobe " + VERSION

if __name__ == "__main__":  # pragma: no cover
    print(VERSION)
