"""
Check-in Print Service Configuration
"""

import os

# =============================================================================
# Server Configuration
# =============================================================================

PORT = int(os.environ.get('CHECKIN_PRINT_PORT', 5100))
HOST = os.environ.get('CHECKIN_PRINT_HOST', '0.0.0.0')
DEBUG = os.environ.get('CHECKIN_PRINT_DEBUG', 'false').lower() == 'true'
LOG_LEVEL = os.environ.get('CHECKIN_PRINT_LOG_LEVEL', 'INFO').upper()

# API Key for authentication
API_KEY = os.environ.get('CHECKIN_PRINT_API_KEY', 'checkin-print-2026')

# Seconds the API waits on the service event loop
API_CALL_TIMEOUT = 60

# =============================================================================
# Transports
# =============================================================================

# Comma separated: memory, wifi, bluetooth, bluetooth_le, usb
TRANSPORTS = [
    name.strip()
    for name in os.environ.get('CHECKIN_PRINT_TRANSPORTS', 'wifi,bluetooth,bluetooth_le,usb').split(',')
    if name.strip()
]

# Replace every transport with the in-memory simulator
SIMULATOR = os.environ.get('CHECKIN_PRINT_SIMULATOR', 'false').lower() == 'true'

# WiFi printers probed during discovery (host or host:port)
WIFI_HOSTS = [
    host.strip()
    for host in os.environ.get('CHECKIN_PRINT_WIFI_HOSTS', '').split(',')
    if host.strip()
]

# Brother raw printing port
RAW_PORT = 9100

SERIAL_BAUDRATE = int(os.environ.get('CHECKIN_PRINT_SERIAL_BAUDRATE', 115200))

# GATT characteristic used for raster writes on BLE printers
BLE_WRITE_CHARACTERISTIC = os.environ.get(
    'CHECKIN_PRINT_BLE_CHARACTERISTIC',
    '49535343-8841-43f4-a8d4-ecbe34729bb3',
)
BLE_SCAN_TIMEOUT = 5.0  # seconds
BLE_CHUNK_SIZE = 180  # bytes

DEFAULT_CONNECTION_TIMEOUT = 10.0  # seconds

# =============================================================================
# Connection Manager
# =============================================================================

DISCOVERY_INTERVAL = 120.0  # seconds
LIVENESS_INTERVAL = 30.0  # seconds
PRINTER_STALE_AFTER = 600.0  # seconds without being seen
MFI_AUTH_TIMEOUT = 30.0  # seconds
MFI_SESSION_TTL = 3600.0  # seconds

# =============================================================================
# Health Monitor
# =============================================================================

HEALTH_CHECK_INTERVAL = 30.0  # seconds
HEALTH_PROBE_TIMEOUT = 10.0  # seconds
HEALTHY_LATENCY_MS = 1000
DEGRADED_LATENCY_MS = 3000
RECONNECT_BASE_DELAY = 5.0  # seconds
RECONNECT_MAX_DELAY = 300.0  # seconds
RECONNECT_JITTER = 1.0  # seconds
RECONNECT_MAX_ATTEMPTS = 10
HEALTH_HISTORY_SIZE = 50
HEALTH_SWEEP_INTERVAL = 60.0  # seconds
HEALTH_STALE_AFTER = 300.0  # seconds without a check

# =============================================================================
# Job Processor
# =============================================================================

MAX_CONCURRENT_JOBS = 3
JOB_TIMEOUT = 120.0  # seconds
JOB_CLEANUP_INTERVAL = 600.0  # seconds
JOB_RETENTION = 24 * 3600.0  # seconds
MAX_COMPLETED_JOBS = 100
MAX_RETRIES = 3

# =============================================================================
# Queue Manager
# =============================================================================

QUEUE_STRATEGY = os.environ.get('CHECKIN_PRINT_QUEUE_STRATEGY', 'adaptive')
MAX_BATCH_SIZE = 10
MAX_BATCH_WAIT = 30.0  # seconds
BATCH_TICK_INTERVAL = 5.0  # seconds
STATS_INTERVAL = 10.0  # seconds
OPTIMIZE_INTERVAL = 60.0  # seconds
BATCHING_THRESHOLD = 3  # pending jobs before opportunistic batching
ESTIMATED_SECONDS_PER_JOB = 15

# Adaptive strategy bounds
ADAPTIVE_HIGH_LOAD = 20
ADAPTIVE_LOW_LOAD = 5
ADAPTIVE_MAX_BATCH_SIZE = 15
ADAPTIVE_MIN_BATCH_SIZE = 3
ADAPTIVE_MAX_WAIT = 60.0  # seconds
ADAPTIVE_MIN_WAIT = 10.0  # seconds

# =============================================================================
# Errors
# =============================================================================

ERROR_HISTORY_SIZE = 100
RECENT_ERROR_WINDOW = 24 * 3600.0  # seconds

# =============================================================================
# Badge Rendering
# =============================================================================

DEFAULT_DPI = 300
CUT_MARGIN_MM = 2.0
MIN_FONT_SIZE = 8

DEFAULT_LABEL_SIZES = [
    {'id': 'ql_62', 'name': '62mm x 29mm', 'width_mm': 62.0, 'height_mm': 29.0, 'is_roll': True},
    {'id': 'ql_29', 'name': '29mm x 90mm', 'width_mm': 29.0, 'height_mm': 90.0, 'is_roll': True},
    {'id': 'ql_38', 'name': '38mm x 90mm', 'width_mm': 38.0, 'height_mm': 90.0, 'is_roll': True},
]

# =============================================================================
# Storage Configuration
# =============================================================================

DATA_DIR = os.environ.get('CHECKIN_PRINT_DATA_DIR', os.path.expanduser('~/.checkin_print_service'))
