from __future__ import annotations

from invoice_downloader.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
