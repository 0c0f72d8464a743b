"""Agentflow orchestrator server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    # 127.0.0.1 keeps the orchestrator local; set API_HOST=0.0.0.0 inside containers
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", 3000))
    debug = os.getenv("DEBUG", "false").lower() == "true"

    print(f"Starting agentflow orchestrator on {host}:{port}")
    uvicorn.run("agentflow.main:app", host=host, port=port, reload=debug)
