import os
import sys
from pathlib import Path

# Ensure the server/ directory is on sys.path so `import willtank.*` works in all runners.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Test-suite guardrails: always run against in-memory SQLite with create_all(),
# whatever a developer's shell or .env exports.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DB_AUTO_CREATE_TABLES"] = "true"
os.environ["DB_REQUIRE_MIGRATIONS_UP_TO_DATE"] = "false"
os.environ["OPENAI_API_KEY"] = ""
