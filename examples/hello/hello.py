import os
import sys


def main() -> None:
    """Run the demo app.
    """

    name: str = sys.argv[2] if len(sys.argv) > 2 else "world"
    print(f"hello, {name}")
    print(f"running as {sys.argv[1]} (pid {os.getpid()}, python {sys.version.split()[0]})")


if __name__ == "__main__":
    main()
