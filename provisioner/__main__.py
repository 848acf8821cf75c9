"""Entry point for ``python -m provisioner``."""

from provisioner.server import main

if __name__ == "__main__":
    main()
