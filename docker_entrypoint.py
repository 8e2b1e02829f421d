#!/usr/bin/env python
"""Docker entrypoint: serve the status and health API, or run the workers."""

import asyncio
import os
import sys

if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "worker":
        from worker import main

        asyncio.run(main())
    else:
        import uvicorn

        uvicorn.run(
            "jobcore.main:app",
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )
