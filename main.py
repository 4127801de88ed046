"""
Entry point for the medication dispensing service.

Run with: python main.py
"""

import asyncio
from app.main import main


if __name__ == "__main__":
    asyncio.run(main())
