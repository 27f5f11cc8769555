# smoke_check.py
# Walks one Observation through create -> update -> delete -> read against a running server.

import json
import sys

import requests

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080/fhir"

observation = {
    "resourceType": "Observation",
    "status": "final",
    "code": {"coding": [{"system": "http://loinc.org", "code": "718-7", "display": "Hemoglobin"}]},
    "subject": {"reference": "Patient/99001"},
    "effectiveDateTime": "2025-01-16T09:00:00Z",
    "valueQuantity": {"value": 14.2, "unit": "g/dL"},
}


def main() -> None:
    try:
        created = requests.post(f"{BASE_URL}/Observation", json=observation)
        created.raise_for_status()
        body = created.json()
        obs_id = body["id"]
        print("POST:", created.status_code, created.headers.get("Location"))
        print(json.dumps(body, indent=2))

        body["status"] = "amended"
        updated = requests.put(f"{BASE_URL}/Observation/{obs_id}", json=body)
        updated.raise_for_status()
        print("PUT:", updated.status_code, "version", updated.json()["meta"]["versionId"])

        deleted = requests.delete(f"{BASE_URL}/Observation/{obs_id}")
        print("DELETE:", deleted.status_code)

        gone = requests.get(f"{BASE_URL}/Observation/{obs_id}")
        print("GET after delete:", gone.status_code)
    except Exception as e:
        print(f"Error: {e}")
        if hasattr(e, "response") and e.response is not None:
            print(e.response.text)
        sys.exit(1)


if __name__ == "__main__":
    main()
