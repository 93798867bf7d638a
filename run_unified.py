"""
Unified Server Entry Point
==========================
Combines the Flask REST endpoints with the FastAPI replay websocket.

Usage:
    uvicorn run_unified:app --port 8001

Routes:
    /pilot/ws               -> FastAPI (replay player websocket)
    /pilot/path, /health    -> Flask (REST)
"""
import sys
import os

# 1. Add current directory to path so we can find app.py and pilot_port
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import settings

settings.configure_logging()

# 2. Import the FastAPI app first (it owns the event loop the replay engine runs on)
from pilot_port.main import app as fastapi_app

# 3. Import the Flask app
from app import app as flask_app

# 4. Mount Flask into FastAPI using WSGIMiddleware
# This allows Flask to handle all routes not captured by FastAPI
from fastapi.middleware.wsgi import WSGIMiddleware
fastapi_app.mount("/", WSGIMiddleware(flask_app))

# 5. Export the unified app for uvicorn
app = fastapi_app
