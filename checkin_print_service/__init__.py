"""
Check-in Print Service
======================

Badge printing for event check-in desks on Brother QL label printers.

Supports:
- WiFi printers (raw TCP, port 9100)
- Bluetooth Classic and USB printers (serial)
- Bluetooth LE printers (GATT)
- A simulator for demos and tests

Usage:
    python -m checkin_print_service

API Endpoints:
    GET  /api/printers           - Discovered printers
    POST /api/discover           - Scan for printers
    POST /api/printers/{id}/connect - Connect a printer
    POST /api/jobs               - Submit a badge job
    GET  /api/jobs/{id}          - Job state and result
    POST /api/print-batch        - Print several badges
    GET  /api/queue              - Queue statistics
    GET  /api/health/connections - Connection health
"""

__version__ = '1.0.0'
__author__ = 'EGS Software AG'
