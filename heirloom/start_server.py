#!/usr/bin/env python3
"""
Run the subscription core under uvicorn.

    python -m heirloom.start_server
"""
import os

import uvicorn


def main():
    uvicorn.run(
        "heirloom.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_level="info",
        access_log=False,  # RequestIdMiddleware logs request.complete
    )


if __name__ == "__main__":
    main()
