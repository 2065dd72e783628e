#!/usr/bin/env python
"""
Check-in Print Service - Standalone Entry Point

Run directly:
    python main.py

Or with environment variables:
    CHECKIN_PRINT_PORT=5200 CHECKIN_PRINT_SIMULATOR=true python main.py
"""

from checkin_print_service.__main__ import main


if __name__ == '__main__':
    main()
