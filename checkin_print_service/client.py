"""
Check-in Print Service Client
=============================

Python SDK for the Check-in Print Service REST API.

Usage:
    from checkin_print_service.client import PrintClient

    client = PrintClient('http://localhost:5100', api_key='your-key')

    # Find and connect a printer
    client.discover_printers()
    client.connect('SIM-QL820')

    # Print a badge and wait for it
    result = client.print_badge({'attendee_name': 'Ada Lovelace', 'qr_code': 'ATT-0001'},
                                printer_id='SIM-QL820', wait=True)

    # Print many, with partial success reporting
    result = client.print_batch([{'attendee_name': 'Ada'}, {'attendee_name': 'Grace'}])
"""

import requests
from typing import Dict, Any, Optional, List


class PrintClient:
    """Client for the Check-in Print Service."""

    def __init__(self, base_url: str = 'http://localhost:5100', api_key: str = None,
                 timeout: float = 30):
        """
        Initialize client.

        Args:
            base_url: Base URL of the print service
            api_key: API key for authentication
            timeout: Seconds to wait for quick calls; printing waits twice as long
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        """Get request headers."""
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        return headers

    def _request(self, method: str, endpoint: str, data: Dict = None,
                 timeout: Optional[float] = None) -> Dict[str, Any]:
        """Make API request."""
        url = f'{self.base_url}{endpoint}'
        timeout = timeout or self.timeout

        try:
            response = requests.request(method, url, json=data, headers=self._headers(), timeout=timeout)
            return response.json()

        except requests.exceptions.Timeout:
            return {'success': False, 'error': 'Request timeout'}
        except requests.exceptions.ConnectionError:
            return {'success': False, 'error': f'Cannot connect to {self.base_url}'}
        except ValueError:
            return {'success': False, 'error': f'Invalid response from {url}'}

    # =========================================================================
    # Health
    # =========================================================================

    def health(self) -> Dict[str, Any]:
        """Check service health."""
        return self._request('GET', '/health')

    def is_online(self) -> bool:
        """Check if service is online."""
        return self.health().get('status') == 'online'

    # =========================================================================
    # Printers
    # =========================================================================

    def list_printers(self) -> List[Dict[str, Any]]:
        """Discovered printers with their connection."""
        return self._request('GET', '/api/printers').get('printers', [])

    def get_printer(self, printer_id: str) -> Optional[Dict[str, Any]]:
        result = self._request('GET', f'/api/printers/{printer_id}')
        return result.get('printer') if result.get('success') else None

    def discover_printers(self) -> List[Dict[str, Any]]:
        """Scan every transport. Returns the connections found."""
        return self._request('POST', '/api/discover', timeout=self.timeout * 2).get('discovered', [])

    def forget_printer(self, printer_id: str) -> Dict[str, Any]:
        return self._request('DELETE', f'/api/printers/{printer_id}')

    def connect(self, printer_id: str) -> Dict[str, Any]:
        return self._request('POST', f'/api/printers/{printer_id}/connect', timeout=self.timeout * 2)

    def disconnect(self, printer_id: str) -> Dict[str, Any]:
        return self._request('POST', f'/api/printers/{printer_id}/disconnect')

    def test_connection(self, printer_id: str) -> Dict[str, Any]:
        return self._request('POST', f'/api/printers/{printer_id}/test')

    def is_printer_online(self, printer_id: str) -> bool:
        return self.test_connection(printer_id).get('success', False)

    # =========================================================================
    # Printing
    # =========================================================================

    def print_badge(self, payload: Dict[str, Any], printer_id: str = None,
                    settings: Dict[str, Any] = None, priority: str = 'normal',
                    wait: bool = False) -> Dict[str, Any]:
        """
        Submit a badge job.

        Args:
            payload: Badge fields (attendee_name required, qr_code, is_vip, ...)
            printer_id: Target printer, else the service default
            settings: Print settings (label_size_id, copies, quality, ...)
            priority: low, normal, high or urgent
            wait: Block until printed and return the result
        """
        data = {
            'payload': payload,
            'printer_id': printer_id,
            'settings': settings,
            'priority': priority,
            'wait': wait,
        }
        return self._request('POST', '/api/jobs', data, timeout=self.timeout * 2 if wait else None)

    def print_batch(self, payloads: List[Dict[str, Any]], printer_id: str = None,
                    settings: Dict[str, Any] = None) -> Dict[str, Any]:
        """Print badges in order. A partial failure reads 'Printed X/Y badges. Last error: ...'."""
        data = {'payloads': payloads, 'printer_id': printer_id, 'settings': settings}
        return self._request('POST', '/api/print-batch', data, timeout=self.timeout * 2 * max(len(payloads), 1))

    # =========================================================================
    # Jobs
    # =========================================================================

    def list_jobs(self, state: str = None, limit: int = 50) -> List[Dict[str, Any]]:
        """List recent print jobs."""
        endpoint = f'/api/jobs?limit={limit}'
        if state:
            endpoint += f'&state={state}'
        return self._request('GET', endpoint).get('jobs', [])

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        result = self._request('GET', f'/api/jobs/{job_id}')
        return result.get('job') if result.get('success') else None

    def cancel_job(self, job_id: str) -> Dict[str, Any]:
        return self._request('POST', f'/api/jobs/{job_id}/cancel')

    # =========================================================================
    # Queue, health, errors
    # =========================================================================

    def queue_status(self) -> Dict[str, Any]:
        return self._request('GET', '/api/queue')

    def pause_queue(self, reason: str = None) -> Dict[str, Any]:
        return self._request('POST', '/api/queue/pause', {'reason': reason} if reason else None)

    def resume_queue(self) -> Dict[str, Any]:
        return self._request('POST', '/api/queue/resume')

    def connection_health(self) -> Dict[str, Any]:
        return self._request('GET', '/api/health/connections')

    def force_reconnect(self, connection_id: str) -> Dict[str, Any]:
        return self._request('POST', f'/api/health/{connection_id}/reconnect', timeout=self.timeout * 2)

    def errors(self, limit: int = 20) -> Dict[str, Any]:
        return self._request('GET', f'/api/errors?limit={limit}')

    # =========================================================================
    # Settings
    # =========================================================================

    def get_settings(self) -> Dict[str, Any]:
        return self._request('GET', '/api/settings').get('settings', {})

    def update_settings(self, **settings) -> Dict[str, Any]:
        return self._request('PUT', '/api/settings', settings)
