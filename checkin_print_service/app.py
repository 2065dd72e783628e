"""
Check-in Print Service - REST API
=================================

Flask front end for the print service.

The service itself runs on an asyncio loop owned by a ServiceRunner;
every route hops onto that loop through the runner.

Run: python -m checkin_print_service
"""

import platform
import socket
import sys
from datetime import datetime

from flask import Flask, request, jsonify, current_app
from flask_cors import CORS

from . import __version__
from .config import API_KEY
from .exceptions import PrintServiceError, PrinterNotFoundError, InvalidConfigurationError
from .models import BadgePayload, PrintSettings, JobPriority, JobState, default_label_sizes
from .service import ServiceRunner

ENDPOINTS = {
    'GET  /health': 'Health check',
    'GET  /api/printers': 'List discovered printers',
    'POST /api/discover': 'Scan for printers',
    'GET  /api/printers/{id}': 'Get printer',
    'DEL  /api/printers/{id}': 'Forget printer',
    'POST /api/printers/{id}/connect': 'Connect printer',
    'POST /api/printers/{id}/disconnect': 'Disconnect printer',
    'POST /api/printers/{id}/test': 'Test connection',
    'GET  /api/jobs': 'List jobs',
    'POST /api/jobs': 'Submit badge job',
    'GET  /api/jobs/{id}': 'Get job',
    'POST /api/jobs/{id}/cancel': 'Cancel job',
    'POST /api/print-batch': 'Print several badges',
    'GET  /api/queue': 'Queue statistics',
    'POST /api/queue/pause': 'Pause queue',
    'POST /api/queue/resume': 'Resume queue',
    'GET  /api/health/connections': 'Connection health',
    'POST /api/health/{connection_id}/reconnect': 'Force reconnect',
    'GET  /api/errors': 'Error statistics',
    'GET  /api/settings': 'Get settings',
    'PUT  /api/settings': 'Update settings',
}


def _runner() -> ServiceRunner:
    return current_app.config['PRINT_RUNNER']


def _check_api_key():
    """Validate API key from request."""
    data = request.get_json(silent=True) or {}
    auth_header = request.headers.get('Authorization', '')

    # Check body
    if data.get('api_key') == current_app.config['API_KEY']:
        return True

    # Check header (Bearer token)
    if auth_header.startswith('Bearer ') and auth_header[7:] == current_app.config['API_KEY']:
        return True

    return False


def _unauthorized():
    return jsonify({'success': False, 'error': 'Invalid API key'}), 401


def _parse_settings(data):
    """PrintSettings from a request body; ``label_size_id`` picks a stock size."""
    if not data:
        return None
    data = dict(data)
    label_size_id = data.pop('label_size_id', None)
    if label_size_id:
        sizes = {size.id: size for size in default_label_sizes()}
        if label_size_id not in sizes:
            raise InvalidConfigurationError(f"Unknown label size: {label_size_id}")
        data['label_size'] = sizes[label_size_id].to_dict()
    return PrintSettings.from_dict(data)


def _printer_view(service, printer):
    connection = service.connections.connection_for_printer(printer.id)
    return {
        **printer.to_dict(),
        'connection': connection.to_dict() if connection else None,
    }


def create_app(runner: ServiceRunner, api_key: str = API_KEY) -> Flask:
    """Build the Flask app around a started ServiceRunner."""
    app = Flask(__name__)
    app.config['PRINT_RUNNER'] = runner
    app.config['API_KEY'] = api_key
    CORS(app)

    @app.errorhandler(PrinterNotFoundError)
    def printer_not_found(e):
        return jsonify({'success': False, 'error': e.message}), 404

    @app.errorhandler(InvalidConfigurationError)
    def invalid_configuration(e):
        return jsonify({'success': False, 'error': str(e)}), 400

    @app.errorhandler(ValueError)
    def invalid_value(e):
        return jsonify({'success': False, 'error': str(e)}), 400

    @app.errorhandler(PrintServiceError)
    def service_error(e):
        return jsonify({'success': False, 'error': str(e)}), 500

    # =========================================================================
    # Health & Info
    # =========================================================================

    @app.route('/api', methods=['GET'])
    def api_info():
        """API info (JSON)."""
        return jsonify({
            'service': 'Check-in Print Service',
            'version': __version__,
            'status': 'running',
            'endpoints': ENDPOINTS,
        })

    @app.route('/health', methods=['GET'])
    def health():
        """Health check with system info."""
        service = _runner().service
        return jsonify({
            'status': 'online' if service.is_running else 'starting',
            'version': __version__,
            'hostname': socket.gethostname(),
            'platform': platform.system(),
            'python': sys.version.split()[0],
            'printers_discovered': len(_runner().invoke(service.connections.list_printers)),
            'timestamp': datetime.now().isoformat(),
        })

    # =========================================================================
    # Printers
    # =========================================================================

    @app.route('/api/printers', methods=['GET'])
    def list_printers():
        service = _runner().service

        def collect():
            return [_printer_view(service, printer) for printer in service.connections.list_printers()]

        printers = _runner().invoke(collect)
        return jsonify({'success': True, 'printers': printers, 'count': len(printers)})

    @app.route('/api/discover', methods=['POST'])
    def discover_printers():
        """Scan every transport for printers."""
        runner = _runner()
        connections = runner.call(runner.service.scan())
        return jsonify({
            'success': True,
            'discovered': [connection.to_dict() for connection in connections],
            'count': len(connections),
        })

    @app.route('/api/printers/<printer_id>', methods=['GET'])
    def get_printer(printer_id):
        service = _runner().service
        printer = _runner().invoke(service.connections.get_printer, printer_id)
        if not printer:
            return jsonify({'success': False, 'error': 'Printer not found'}), 404
        return jsonify({'success': True, 'printer': _runner().invoke(_printer_view, service, printer)})

    @app.route('/api/printers/<printer_id>', methods=['DELETE'])
    def forget_printer(printer_id):
        if not _check_api_key():
            return _unauthorized()
        runner = _runner()
        if not runner.invoke(runner.service.forget_printer, printer_id):
            return jsonify({'success': False, 'error': 'Printer not found'}), 404
        return jsonify({'success': True, 'message': 'Printer removed'})

    @app.route('/api/printers/<printer_id>/connect', methods=['POST'])
    def connect_printer(printer_id):
        if not _check_api_key():
            return _unauthorized()
        runner = _runner()
        connection = runner.call(runner.service.connect(printer_id))
        status = 200 if connection.is_connected else 502
        return jsonify({
            'success': connection.is_connected,
            'connection': connection.to_dict(),
            'error': connection.error,
        }), status

    @app.route('/api/printers/<printer_id>/disconnect', methods=['POST'])
    def disconnect_printer(printer_id):
        if not _check_api_key():
            return _unauthorized()
        runner = _runner()
        if not runner.invoke(runner.service.disconnect, printer_id):
            return jsonify({'success': False, 'error': 'Printer not found'}), 404
        return jsonify({'success': True, 'message': 'Printer disconnected'})

    @app.route('/api/printers/<printer_id>/test', methods=['POST'])
    def test_printer(printer_id):
        """Test connection to printer."""
        runner = _runner()
        alive = runner.call(runner.service.test_connection(printer_id))
        result = {'success': alive, 'printer_id': printer_id}
        if not alive:
            result['error'] = 'Printer is not responding'
        return jsonify(result)

    # =========================================================================
    # Jobs
    # =========================================================================

    @app.route('/api/jobs', methods=['GET'])
    def list_jobs():
        """List recent jobs."""
        limit = request.args.get('limit', 50, type=int)
        state = request.args.get('state')
        runner = _runner()

        def collect():
            jobs = runner.service.list_jobs(JobState(state) if state else None)[:limit]
            return [runner.service.describe_job(job.id) for job in jobs]

        jobs = runner.invoke(collect)
        return jsonify({'success': True, 'jobs': jobs, 'count': len(jobs)})

    @app.route('/api/jobs', methods=['POST'])
    def submit_job():
        """Queue a badge. ``wait: true`` blocks until it is printed."""
        if not _check_api_key():
            return _unauthorized()

        data = request.get_json()
        if not data:
            return jsonify({'success': False, 'error': 'Request body required'}), 400
        if not data.get('payload'):
            return jsonify({'success': False, 'error': 'payload required'}), 400

        payload = BadgePayload.from_dict(data['payload'])
        settings = _parse_settings(data.get('settings'))
        priority = JobPriority(data.get('priority', JobPriority.NORMAL.value))
        runner = _runner()

        if data.get('wait'):
            result = runner.call(
                runner.service.print_badge(payload, settings, data.get('printer_id'), priority,
                                           timeout=runner.call_timeout),
                timeout=runner.call_timeout + 5,
            )
            return jsonify({'success': result.success, 'result': result.to_dict(),
                            'error': result.error_message})

        job_id = runner.call(runner.service.submit_job(payload, settings, priority, data.get('printer_id')))
        return jsonify({
            'success': True,
            'job': runner.invoke(runner.service.describe_job, job_id),
        }), 201

    @app.route('/api/jobs/<job_id>', methods=['GET'])
    def get_job(job_id):
        runner = _runner()
        job = runner.invoke(runner.service.describe_job, job_id)
        if not job:
            return jsonify({'success': False, 'error': 'Job not found'}), 404
        return jsonify({'success': True, 'job': job})

    @app.route('/api/jobs/<job_id>/cancel', methods=['POST'])
    def cancel_job(job_id):
        if not _check_api_key():
            return _unauthorized()
        runner = _runner()
        if not runner.invoke(runner.service.cancel_job, job_id):
            return jsonify({'success': False, 'error': 'Job not found or already finished'}), 404
        return jsonify({'success': True, 'message': 'Job cancelled'})

    @app.route('/api/print-batch', methods=['POST'])
    def print_batch():
        """Print several badges in order; reports partial success."""
        if not _check_api_key():
            return _unauthorized()

        data = request.get_json()
        if not data or not data.get('payloads'):
            return jsonify({'success': False, 'error': 'payloads required'}), 400

        payloads = [BadgePayload.from_dict(item) for item in data['payloads']]
        settings = _parse_settings(data.get('settings'))
        runner = _runner()
        result = runner.call(
            runner.service.print_badges(payloads, settings, data.get('printer_id')),
            timeout=runner.call_timeout * len(payloads),
        )
        return jsonify({'success': result.success, 'result': result.to_dict(), 'error': result.error_message})

    # =========================================================================
    # Queue
    # =========================================================================

    @app.route('/api/queue', methods=['GET'])
    def queue_status():
        runner = _runner()

        def collect():
            queue = runner.service.queue
            return {
                'statistics': queue.get_statistics().to_dict(),
                'batches': [batch.to_dict() for batch in queue.get_batches()],
                'config': queue.config.to_dict(),
            }

        return jsonify({'success': True, **runner.invoke(collect)})

    @app.route('/api/queue/pause', methods=['POST'])
    def pause_queue():
        if not _check_api_key():
            return _unauthorized()
        data = request.get_json(silent=True) or {}
        runner = _runner()
        runner.invoke(runner.service.queue.pause, data.get('reason', 'Paused by operator'))
        return jsonify({'success': True, 'paused': True})

    @app.route('/api/queue/resume', methods=['POST'])
    def resume_queue():
        if not _check_api_key():
            return _unauthorized()
        runner = _runner()
        released = runner.invoke(runner.service.queue.resume)
        return jsonify({'success': True, 'paused': False, 'released_jobs': released})

    # =========================================================================
    # Health & Errors
    # =========================================================================

    @app.route('/api/health/connections', methods=['GET'])
    def connection_health():
        runner = _runner()

        def collect():
            health = runner.service.health
            results = {}
            for connection in runner.service.connections.list_connections():
                last = health.get_last_result(connection.id)
                results[connection.id] = last.to_dict() if last else None
            return {'statistics': health.get_statistics(), 'connections': results}

        return jsonify({'success': True, **runner.invoke(collect)})

    @app.route('/api/health/<connection_id>/reconnect', methods=['POST'])
    def force_reconnect(connection_id):
        if not _check_api_key():
            return _unauthorized()
        runner = _runner()
        if runner.invoke(runner.service.connections.get_connection, connection_id) is None:
            return jsonify({'success': False, 'error': 'Connection not found'}), 404
        result = runner.call(runner.service.health.force_reconnect(connection_id))
        return jsonify({'success': result.success, 'result': result.to_dict()})

    @app.route('/api/errors', methods=['GET'])
    def error_report():
        limit = request.args.get('limit', 20, type=int)
        runner = _runner()

        def collect():
            errors = runner.service.errors
            return {
                'statistics': errors.get_statistics(),
                'recent': [error.to_dict() for error in errors.get_recent_errors(limit)],
            }

        return jsonify({'success': True, **runner.invoke(collect)})

    # =========================================================================
    # Settings
    # =========================================================================

    @app.route('/api/settings', methods=['GET'])
    def get_settings():
        store = _runner().service.settings_store
        return jsonify({'success': True, 'settings': store.settings.to_dict()})

    @app.route('/api/settings', methods=['PUT'])
    def update_settings():
        if not _check_api_key():
            return _unauthorized()
        data = request.get_json()
        if not data:
            return jsonify({'success': False, 'error': 'Request body required'}), 400
        data = {k: v for k, v in data.items() if k != 'api_key'}
        runner = _runner()
        settings = runner.invoke(runner.service.update_settings, **data)
        return jsonify({'success': True, 'settings': settings.to_dict()})

    return app
