"""ASGI entry point.

    uvicorn multishop.serve:app --port 8000

Importing this module loads settings; a missing signing secret stops the
process before it serves anything.
"""

from __future__ import annotations

import uvicorn

from multishop.app import create_app

app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
