import os
import sys

from .server import create_app

DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./tikiti.db")
    sys.exit(1)

app = create_app(DATABASE_URL)
