from checkin_print_service.errors import (
    ErrorHandler, ErrorCode, ErrorType, RecoveryAction, extract_code, classify_message,
)
from checkin_print_service.events import EventBus, ErrorClassified


def test_out_of_labels_is_recoverable_hardware_error():
    handler = ErrorHandler()
    error = handler.parse("Printer reports no media", ErrorCode.OUT_OF_LABELS)

    assert error.type == ErrorType.HARDWARE
    assert error.is_recoverable
    assert error.message.startswith("The printer is out of labels")
    assert any('label roll' in step for step in error.troubleshooting_steps)
    assert handler.get_recovery_action(error) == RecoveryAction.PAUSE_AND_NOTIFY


def test_code_is_extracted_from_message():
    assert extract_code("Print failed, error: COVER_OPEN") == ErrorCode.COVER_OPEN
    assert extract_code("SDK said [printer_jam]") == ErrorCode.PRINTER_JAM
    assert extract_code("something odd happened") == ErrorCode.UNKNOWN_ERROR

    error = ErrorHandler().parse("status code: LOW_BATTERY")
    assert error.code == ErrorCode.LOW_BATTERY
    assert error.type == ErrorType.HARDWARE


def test_keyword_fallback_classification():
    assert classify_message("Could not connect to host") == ErrorType.CONNECTION
    assert classify_message("MFi handshake rejected") == ErrorType.AUTHENTICATION
    assert classify_message("wifi is off") == ErrorType.NETWORK
    assert classify_message("???") == ErrorType.UNKNOWN

    error = ErrorHandler().parse("Bluetooth adapter missing")
    assert error.code == ErrorCode.UNKNOWN_ERROR
    assert error.type == ErrorType.PERMISSION
    assert error.message == "The print service is missing a required permission."


def test_non_recoverable_errors_are_surfaced():
    handler = ErrorHandler()
    error = handler.parse("handshake failed", ErrorCode.MFI_AUTH_FAILED)

    assert not error.is_recoverable
    assert handler.get_recovery_action(error) == RecoveryAction.SURFACE
    assert error.user_action == "Verify printer compatibility"


def test_connection_errors_reconnect():
    handler = ErrorHandler()
    for code in (ErrorCode.CONNECTION_LOST, ErrorCode.CONNECTION_TIMEOUT, ErrorCode.TIMEOUT):
        assert handler.get_recovery_action(handler.parse("link", code)) == RecoveryAction.RECONNECT


def test_specific_steps_come_before_generic_ones():
    error = ErrorHandler().parse("jam", ErrorCode.PRINTER_JAM)
    assert error.troubleshooting_steps[:2] == ("Turn off the printer", "Open the cover and remove jammed labels")
    assert "Clear any paper jams or obstructions" in error.troubleshooting_steps
    assert len(set(error.troubleshooting_steps)) == len(error.troubleshooting_steps)


def test_every_error_has_a_message_and_steps():
    handler = ErrorHandler()
    for message in ("", "random failure", "print job broke"):
        error = handler.parse(message)
        assert error.message
        assert error.troubleshooting_steps


def test_history_and_statistics():
    bus = EventBus()
    published = []
    bus.subscribe(ErrorClassified, published.append)
    handler = ErrorHandler(bus, history_size=3)

    handler.parse("a", ErrorCode.COVER_OPEN)
    handler.parse("b", ErrorCode.COVER_OPEN)
    handler.parse("c", ErrorCode.AUTH_FAILED)
    handler.parse("d", ErrorCode.CONNECTION_LOST)

    stats = handler.get_statistics()
    assert stats['total_errors'] == 3
    assert stats['errors_by_code'] == {ErrorCode.COVER_OPEN: 1, ErrorCode.AUTH_FAILED: 1,
                                       ErrorCode.CONNECTION_LOST: 1}
    assert stats['recoverable_errors'] == 2
    assert stats['recent_errors'] == 3
    assert len(published) == 4
    assert handler.get_recent_errors(1)[0].code == ErrorCode.CONNECTION_LOST

    handler.clear_history()
    assert handler.get_statistics()['total_errors'] == 0


def test_error_serializes():
    error = ErrorHandler().parse("cover", ErrorCode.COVER_OPEN, {'printer_id': 'QL-1'})
    data = error.to_dict()
    assert data['type'] == 'hardware'
    assert data['context'] == {'printer_id': 'QL-1'}
    assert data['technical_details'] == "cover"
    assert "COVER_OPEN" in str(error)
