#!/usr/bin/env python3
"""Development scripts for the Bus Booking Engine."""

import subprocess
import sys


def start():
    """Start the development server."""
    subprocess.run([
        "uvicorn",
        "bus_booking_engine.main:app",
        "--host", "0.0.0.0",
        "--port", "3000",
        "--reload"
    ])


def worker():
    """Start a Celery worker with the embedded beat scheduler."""
    subprocess.run([
        "celery",
        "-A", "bus_booking_engine.tasks.celery_app",
        "worker",
        "--beat",
        "-Q", "reservations,celery",
        "--loglevel", "info"
    ])


def test():
    """Run the test suite."""
    subprocess.run(["pytest", "tests/"])


def lint():
    """Run linting and type checking."""
    subprocess.run(["black", "bus_booking_engine/", "tests/"])
    subprocess.run(["mypy", "bus_booking_engine/"])


def format_code():
    """Format code with black."""
    subprocess.run(["black", "bus_booking_engine/", "tests/"])


def export_openapi(output_file: str = "openapi.json"):
    """Write the OpenAPI specification of the API to a JSON file."""
    import json

    from bus_booking_engine.main import app

    openapi_schema = app.openapi()
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(openapi_schema, f, indent=2, ensure_ascii=False)

    paths = openapi_schema.get("paths", {})
    print(f"OpenAPI specification exported to: {output_file}")
    for path in sorted(paths):
        print(f"  {path}: {', '.join(method.upper() for method in paths[path])}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts.py <command>")
        print("Commands: start, worker, test, lint, format, export-openapi")
        sys.exit(1)

    command = sys.argv[1].replace("-", "_")
    if command == "format":
        command = "format_code"
    if hasattr(sys.modules[__name__], command):
        getattr(sys.modules[__name__], command)()
    else:
        print(f"Unknown command: {sys.argv[1]}")
        sys.exit(1)
