#!/usr/bin/env python3
"""
Main entry point for the Church Treasury App
"""
import logging
import os

from app import build_app

logging.basicConfig(level=logging.INFO)

app = build_app()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8080))

    print("⛪ Starting Church Treasury App...")
    print(f"📡 Running on port {port}")

    app.run(host='0.0.0.0', port=port, debug=False)
