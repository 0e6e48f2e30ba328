import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The app builds its store at import time, so point it at a throwaway file first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="servicoja-tests-")
os.environ["MARKETPLACE_DB_PATH"] = os.path.join(_TEST_DB_DIR, "marketplace.sqlite3")
os.environ["MARKETPLACE_SEED"] = "true"
os.environ["AUTH_SECRET"] = "test-secret"
os.environ["AUTH_REQUIRED"] = "false"
os.environ.pop("FIREBASE_CREDENTIALS_PATH", None)
