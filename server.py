from __future__ import annotations

import os

from fotozip_backend.api import create_app


# Settings come from the environment (see fotozip_backend/config.py).
app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "4000"))
    uvicorn.run("server:app", host="0.0.0.0", port=port, reload=False)
