from __future__ import annotations

import os

from fastapi import FastAPI, HTTPException


# Run it in a container with curl installed, e.g. as primary "example-api-<id>"
# and enable it with health_port 8000 and version_path ".version".
VERSION = os.getenv("VERSION", "dev")

app = FastAPI(title=f"Example Service {VERSION}")

APP_STATE = {"unhealthy": False, "omit_version": False}


@app.get("/health")
def health() -> dict[str, str]:
    if APP_STATE["unhealthy"]:
        raise HTTPException(status_code=503, detail="Deploying")
    if APP_STATE["omit_version"]:
        return {"status": "healthy"}
    return {"status": "healthy", "version": VERSION}


@app.post("/simulate/unhealthy")
def simulate_unhealthy() -> dict[str, str]:
    # Mimics a primary in the middle of a redeploy.
    APP_STATE["unhealthy"] = True
    return {"msg": "health endpoint now returns 503"}


@app.post("/simulate/no-version")
def simulate_no_version() -> dict[str, str]:
    APP_STATE["omit_version"] = True
    return {"msg": "health payload no longer carries a version"}


@app.post("/simulate/reset")
def reset() -> dict[str, str]:
    APP_STATE["unhealthy"] = False
    APP_STATE["omit_version"] = False
    return {"msg": "back to normal"}
