# fhir_server/config.py

import os

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///fhir_server.db")
SQL_ECHO = os.getenv("SQL_ECHO", "").lower() in ("1", "true", "yes")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "")

# Routing
FHIR_BASE_PATH = os.getenv("FHIR_BASE_PATH", "/fhir")

# Logical id forced by the `test` query flag on create, for reproducible fixtures
TEST_SENTINEL_ID = 7357

# Media type used for every FHIR payload we emit
FHIR_JSON_MIME = "application/json+fhir"
