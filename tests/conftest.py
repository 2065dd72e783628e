"""
Shared fixtures.

Async code is driven with asyncio.run() inside each test; fixtures only
build objects, so nothing here needs a running loop.
"""

import random

import pytest

from checkin_print_service.models import (
    Printer, PrinterCapabilities, TransportType, BadgePayload, LabelSize,
)
from checkin_print_service.service import PrintService
from checkin_print_service.settings import SettingsStore
from checkin_print_service.transports import InMemoryTransport

# Low resolution keeps rendering fast
TEST_DPI = 60

SMALL_LABEL = LabelSize(id='ql_62', name='62mm x 29mm', width_mm=62.0, height_mm=29.0)


def make_printer(printer_id='QL-1', transport_type=TransportType.WIFI, **kwargs):
    kwargs.setdefault('capabilities', PrinterCapabilities(
        supported_label_sizes=(SMALL_LABEL,),
        max_resolution_dpi=TEST_DPI,
    ))
    return Printer(
        id=printer_id,
        name=f'Brother {printer_id}',
        model='QL-820NWB',
        transport_type=transport_type,
        address=kwargs.pop('address', f'10.0.0.{len(printer_id)}'),
        **kwargs,
    )


@pytest.fixture
def printer():
    return make_printer()


@pytest.fixture
def memory_transport(printer):
    return InMemoryTransport([printer, make_printer('QL-2', TransportType.BLUETOOTH, address='00:80:77:00:00:02')])


@pytest.fixture
def transports(memory_transport):
    return {transport_type: memory_transport for transport_type in TransportType}


@pytest.fixture
def payload():
    return BadgePayload(attendee_name='Ada Lovelace', attendee_email='ada@example.com',
                        attendee_id='A-1', qr_code='ATT-0001')


@pytest.fixture
def payloads():
    return [BadgePayload(attendee_name=f'Attendee {n}', qr_code=f'ATT-{n:04d}') for n in range(10)]


@pytest.fixture
def settings_store(tmp_path):
    return SettingsStore(data_dir=str(tmp_path))


@pytest.fixture
def make_service(transports, settings_store):
    """Service factory with short intervals; options override per component."""

    def factory(strategy='fifo', **options):
        return PrintService(
            transports=transports,
            settings_store=settings_store,
            strategy=strategy,
            connection_options={'discovery_interval': 60, 'liveness_interval': 60,
                                **options.get('connection_options', {})},
            health_options={'check_interval': 60, 'probe_timeout': 1, 'base_delay': 0.01,
                            'max_delay': 0.05, 'jitter': 0.0, 'rng': random.Random(1),
                            **options.get('health_options', {})},
            processor_options={'job_timeout': 5, 'cleanup_interval': 60,
                               **options.get('processor_options', {})},
            queue_options={'tick_interval': 60, 'stats_interval': 60, 'optimize_interval': 60,
                           **options.get('queue_options', {})},
        )

    return factory
