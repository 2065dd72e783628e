import json

import pytest

from checkin_print_service.exceptions import InvalidConfigurationError
from checkin_print_service.models import PrintSettings, TransportType
from checkin_print_service.settings import AppSettings, SettingsStore


def test_missing_file_gives_defaults(settings_store):
    assert not settings_store.path.exists()
    assert settings_store.settings == AppSettings()


def test_update_persists_across_stores(tmp_path):
    store = SettingsStore(data_dir=str(tmp_path))
    store.update(default_printer_id='QL-1', default_label_size_id='ql_29', print_timeout=45,
                 direct_printing_enabled=True,
                 direct_settings=PrintSettings.wifi('192.168.1.50').to_dict())

    reloaded = SettingsStore(data_dir=str(tmp_path)).settings
    assert reloaded.default_printer_id == 'QL-1'
    assert reloaded.default_label_size_id == 'ql_29'
    assert reloaded.print_timeout == 45.0
    assert reloaded.direct_printing_enabled
    assert reloaded.direct_settings.connection_type == TransportType.WIFI
    assert reloaded.direct_settings.ip_address == '192.168.1.50'


def test_corrupt_file_gives_defaults(settings_store):
    settings_store.path.write_text('{not json')
    assert settings_store.load() == AppSettings()

    settings_store.path.write_text(json.dumps({'colour': 'red'}))
    assert settings_store.load() == AppSettings()


def test_invalid_updates_are_rejected(settings_store):
    with pytest.raises(InvalidConfigurationError):
        settings_store.update(colour='red')
    with pytest.raises(InvalidConfigurationError):
        settings_store.update(print_timeout=0)
    assert not settings_store.path.exists()


def test_reset(settings_store):
    settings_store.update(default_printer_id='QL-1')
    assert settings_store.reset() == AppSettings()
    assert json.loads(settings_store.path.read_text())['default_printer_id'] is None
