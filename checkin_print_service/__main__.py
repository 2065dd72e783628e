"""
Run the Check-in Print Service: python -m checkin_print_service
"""

import logging

from . import __version__
from .app import create_app, ENDPOINTS
from .config import PORT, HOST, DEBUG, LOG_LEVEL, DATA_DIR, SIMULATOR, TRANSPORTS
from .service import PrintService, ServiceRunner


def main():
    """Run the service."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    print("=" * 60)
    print("  Check-in Print Service")
    print("=" * 60)
    print(f"  Version: {__version__}")
    print(f"  Port: {PORT}")
    print(f"  Data: {DATA_DIR}")
    print(f"  Transports: {'simulator' if SIMULATOR else ', '.join(TRANSPORTS)}")
    print("=" * 60)
    print("  API Endpoints:")
    for route, purpose in ENDPOINTS.items():
        print(f"    {route:<44} - {purpose}")
    print("=" * 60)

    runner = ServiceRunner(PrintService())
    runner.start()
    print(f"  Discovered {len(runner.invoke(runner.service.connections.list_printers))} printer(s)")
    print("=" * 60)

    try:
        create_app(runner).run(host=HOST, port=PORT, debug=DEBUG, use_reloader=False)
    finally:
        runner.stop()


if __name__ == '__main__':
    main()
