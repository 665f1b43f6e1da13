from __future__ import annotations

import argparse

import uvicorn

from m365assess.apps.api.main import create_app
from m365assess.core.config import get_settings


def main() -> None:
    # Serve the assessment API with env-driven settings for local runs and containers.
    parser = argparse.ArgumentParser(description="Run the M365 assessment API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    app = create_app(get_settings())
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
