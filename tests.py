"""
Tests for the Cedula Scanner Flask application.
"""
import base64
import io
import json
import re
import time

from PyPDF2 import PdfReader

from config import Settings
from conftest import FakeCaptureBackend, make_image_bytes


def data_url(data, mime="image/jpeg"):
    return f"data:{mime};base64," + base64.b64encode(data).decode()


def send_payload(**overrides):
    payload = {
        "pdfBase64": base64.b64encode(b"%PDF-1.4 test").decode(),
        "filename": "cedula_Ana_Ruiz_2024-01-01_10-00.pdf",
        "clientName": "Ana Ruiz",
    }
    payload.update(overrides)
    return payload


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        assert json.loads(response.data)['status'] == 'healthy'

    def test_status_lists_profiles(self, client):
        """Test /api/status reports configured sender profiles."""
        data = json.loads(client.get('/api/status').data)
        assert data['sender_profiles'] == ['hostessvip']
        assert data['smtp_configured'] is True


class TestSendEndpoint:
    """Test the delivery endpoint."""

    def test_send_success(self, client, transport_recorder):
        """Test a valid request is delivered."""
        response = client.post('/api/send', json=send_payload())
        data = json.loads(response.data)
        assert response.status_code == 200
        assert data['ok'] is True
        assert re.fullmatch(r'[0-9a-f]{12}', data['errorId'])
        assert len(transport_recorder.transports) == 1

    def test_missing_pdf_returns_400(self, client, transport_recorder):
        """Test omitted pdfBase64 fails before any transport is opened."""
        payload = send_payload()
        del payload['pdfBase64']
        response = client.post('/api/send', json=payload)
        data = json.loads(response.data)
        assert response.status_code == 400
        assert data['ok'] is False
        assert data['errorId']
        assert transport_recorder.transports == []

    def test_oversized_pdf_returns_413(self, client, transport_recorder):
        """Test a 9 MiB document is rejected."""
        big = base64.b64encode(b'\0' * (9 * 1024 * 1024)).decode()
        response = client.post('/api/send', json=send_payload(pdfBase64=big))
        assert response.status_code == 413
        assert json.loads(response.data)['ok'] is False
        assert transport_recorder.transports == []

    def test_invalid_json_returns_400(self, client):
        """Test invalid JSON returns appropriate error."""
        response = client.post('/api/send', data='{"invalid": json', content_type='application/json')
        assert response.status_code == 400
        assert json.loads(response.data)['ok'] is False

    def test_invalid_recipient_returns_400(self, client, transport_recorder):
        """Test a malformed destination address."""
        response = client.post('/api/send', json=send_payload(to='nobody'))
        assert response.status_code == 400
        assert transport_recorder.transports == []

    def test_subject_line_break_returns_400(self, client, transport_recorder):
        """Test a subject carrying extra headers is rejected."""
        response = client.post('/api/send', json=send_payload(subject='Hola\r\nBcc: x@evil.com'))
        assert response.status_code == 400
        assert json.loads(response.data)['ok'] is False
        assert transport_recorder.transports == []

    def test_auth_failure_returns_502(self, client, transport_recorder):
        """Test a rejected login maps to bad gateway."""
        transport_recorder.fail_on = 'verify'
        response = client.post('/api/send', json=send_payload())
        data = json.loads(response.data)
        assert response.status_code == 502
        assert data['ok'] is False and data['errorId']

    def test_send_failure_returns_500(self, client, transport_recorder):
        """Test a failure after verification maps to server error."""
        transport_recorder.fail_on = 'send'
        assert client.post('/api/send', json=send_payload()).status_code == 500

    def test_preflight_returns_204(self, client):
        """Test OPTIONS answers with an empty 204 and CORS headers."""
        response = client.options('/api/send', headers={
            'Origin': 'http://kiosk.local',
            'Access-Control-Request-Method': 'POST'
        })
        assert response.status_code == 204
        assert response.data == b''
        assert response.headers['Access-Control-Allow-Origin'] == '*'

    def test_preflight_headers_match_response(self, client):
        """Test preflight and POST expose identical CORS headers."""
        names = ('Access-Control-Allow-Origin', 'Access-Control-Allow-Methods',
                 'Access-Control-Allow-Headers')
        headers = {'Origin': 'http://kiosk.local'}
        preflight = client.options('/api/send', headers=headers)
        post = client.post('/api/send', json=send_payload(), headers=headers)
        assert [preflight.headers.get(n) for n in names] == [post.headers.get(n) for n in names]
        assert post.headers.get('Access-Control-Allow-Methods') == 'POST, OPTIONS'


class TestComposeEndpoint:
    """Test PDF composition endpoint."""

    def test_compose_returns_pdf(self, client, front_jpeg, back_jpeg):
        """Test two captures produce a two-page PDF download."""
        response = client.post('/api/compose', json={
            'front': data_url(front_jpeg),
            'back': data_url(back_jpeg),
            'clientName': 'Ana Ruiz'
        })
        assert response.status_code == 200
        assert response.mimetype == 'application/pdf'
        assert re.search(r'cedula_Ana_Ruiz_\d{4}-\d{2}-\d{2}_\d{2}-\d{2}\.pdf',
                         response.headers['Content-Disposition'])
        assert len(PdfReader(io.BytesIO(response.data)).pages) == 2

    def test_compose_requires_both_sides(self, client, front_jpeg):
        """Test a missing side is rejected."""
        response = client.post('/api/compose', json={'front': data_url(front_jpeg)})
        assert response.status_code == 400

    def test_compose_rejects_unsupported_image(self, client, front_jpeg):
        """Test a GIF side is rejected."""
        response = client.post('/api/compose', json={
            'front': data_url(front_jpeg),
            'back': data_url(b'GIF89a....', mime='image/gif')
        })
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'UNSUPPORTED_IMAGE_FORMAT'


class TestCaptureEndpoints:
    """Test camera and upload endpoints."""

    def test_devices_listed(self, client):
        """Test /api/devices lists the fake camera."""
        data = json.loads(client.get('/api/devices').data)
        assert data['devices'] == [{'deviceId': 'cam-0', 'label': 'Camara 1'}]
        assert data['fallback'] is False

    def test_start_capture_stop(self, client, capture_backend):
        """Test the full camera flow with downscaling."""
        capture_backend.frame_size = (2400, 1200)
        assert json.loads(client.post('/start_camera', json={}).data)['success'] is True

        data = json.loads(client.post('/capture').data)
        assert data['success'] is True
        assert (data['width'], data['height']) == (1600, 800)
        assert data['dataUrl'].startswith('data:image/jpeg;base64,')

        assert json.loads(client.post('/stop_camera').data)['success'] is True
        assert capture_backend.events[-1] == ('release', 'cam-0')

    def test_capture_before_start(self, client):
        """Test capturing with no stream is reported as not ready."""
        response = client.post('/capture')
        assert response.status_code == 409
        assert json.loads(response.data)['error_code'] == 'NOT_READY'

    def test_denied_camera_offers_fallback(self, client, capture_backend):
        """Test a denied camera switches to manual upload."""
        capture_backend.denied.add('cam-0')
        response = client.post('/start_camera', json={'deviceId': 'cam-0'})
        data = json.loads(response.data)
        assert response.status_code == 409
        assert data['fallback'] is True
        assert data['error_code'] == 'DEVICE_UNAVAILABLE'

    def test_upload_fallback(self, client, sample_png):
        """Test a manual upload is returned as a capture."""
        response = client.post('/api/upload', data={
            'image': (io.BytesIO(sample_png), 'cedula.png', 'image/png')
        }, content_type='multipart/form-data')
        data = json.loads(response.data)
        assert response.status_code == 200
        assert (data['width'], data['height'], data['mimeType']) == (120, 300, 'image/png')

    def test_upload_requires_image(self, client):
        """Test /api/upload requires an image field."""
        response = client.post('/api/upload', data={}, content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'NO_IMAGE'

    def test_full_pipeline(self, client, capture_backend, transport_recorder):
        """Test capture → compose → send end to end."""
        capture_backend.frame_size = (800, 500)
        client.post('/start_camera', json={})
        front = json.loads(client.post('/capture').data)['dataUrl']
        back = data_url(make_image_bytes(640, 400))

        pdf = client.post('/api/compose', json={'front': front, 'back': back, 'clientName': 'Ana'})
        filename = re.search(r'filename=(\S+\.pdf)', pdf.headers['Content-Disposition']).group(1)
        response = client.post('/api/send', json={
            'pdfBase64': base64.b64encode(pdf.data).decode(),
            'filename': filename,
            'clientName': 'Ana',
            'senderKey': 'hostessvip'
        })
        assert response.status_code == 200
        message = transport_recorder.transports[0].sent[0]
        attachment, = list(message.iter_attachments())
        assert attachment.get_content() == pdf.data
        assert transport_recorder.transports[0].config.user == 'hostess@example.com'


def test_no_camera_backend_starts_in_fallback():
    """Test the manager reports fallback when no device exists."""
    from layer1_capture import AcquisitionManager
    manager = AcquisitionManager(FakeCaptureBackend(devices=()))
    manager.refresh_devices()
    assert manager.status()['fallback'] is True


def test_app_watches_for_hot_plug(env, transport_recorder):
    """Test the app starts the device watcher and picks up a new camera."""
    from app import create_app

    env['CAMERA_POLL_INTERVAL'] = '0.01'
    backend = FakeCaptureBackend(devices=())
    app = create_app(settings=Settings.from_env(env), capture_backend=backend,
                     transport_factory=transport_recorder)
    acquisition = app.extensions['cedula'].acquisition
    try:
        assert acquisition.watch_thread.is_alive()
        time.sleep(0.2)
        backend.devices = FakeCaptureBackend().devices

        deadline = time.monotonic() + 5
        while not acquisition.devices and time.monotonic() < deadline:
            time.sleep(0.01)
        assert [d.device_id for d in acquisition.devices] == ['cam-0']
    finally:
        acquisition.close()
    assert not acquisition.watch_thread.is_alive()
