"""sidecar-manager 入口点。

支持: python -m sidecar_manager
"""

from .app import main

if __name__ == "__main__":
    main()
