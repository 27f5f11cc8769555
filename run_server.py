# run_server.py

import os
import sys

import uvicorn

from fhir_server.logging_setup import setup_logging


def main() -> None:
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8080"))
    if len(sys.argv) > 1:
        port = int(sys.argv[1])

    setup_logging()
    print(f"Serving FHIR Observation API on http://{host}:{port}/fhir/Observation")
    uvicorn.run("fhir_server.api:app", host=host, port=port)


if __name__ == "__main__":
    main()
