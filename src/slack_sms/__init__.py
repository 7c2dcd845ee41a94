from __future__ import annotations

from dotenv import load_dotenv

# Local development reads credentials from a .env file in the working directory.
load_dotenv(override=False)
