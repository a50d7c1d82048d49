#!/usr/bin/env python3
"""Run the demo session application"""
import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "dbsession.main:create_app",
        factory=True,
        host="127.0.0.1",
        port=8000,
    )
