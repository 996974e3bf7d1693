"""
Study Creation Wizard — Uvicorn Launcher
Run this file to start the development server.

Usage:
    python run.py
    python run.py --port 8000
    python run.py --reload
"""
import argparse
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Study Creation Wizard Backend Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable hot reload for development")

    args = parser.parse_args()

    print(f"""
    ========================================================
      Study Creation Wizard -- Backend Server
      API:     http://{args.host}:{args.port}
      Docs:    http://localhost:{args.port}/docs
      ReDoc:   http://localhost:{args.port}/redoc
    ========================================================
    """)

    # Wizard contexts live in-process, so a single worker owns every session
    uvicorn.run(
        "study_wizard.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1,
        log_level="info",
    )


if __name__ == "__main__":
    main()
