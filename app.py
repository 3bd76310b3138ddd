"""
Cedula Scanner Web Application
Thin coordinator for the layered capture → PDF → e-mail pipeline.

Provides REST API for:
- Camera enumeration, start/stop, preview and still capture (local hardware)
- Manual image upload when no camera is usable
- Two-page PDF composition from front/back captures
- E-mail delivery through per-sender SMTP profiles
"""
from flask import Blueprint, Flask, Response, current_app, jsonify, request, send_file
from flask_cors import CORS
import io
import logging
import time

# Import layers
from config import Settings
from layer1_capture import AcquisitionManager, CapturedImage, create_backend
from layer2_composition import DocumentComposer, PDF_MIME_TYPE
from layer3_delivery import DeliveryDispatcher

# Import error handling
from error_handlers import (
    CaptureError,
    CedulaError,
    CompositionError,
    DeviceUnavailableError,
    handle_error
)

logger = logging.getLogger(__name__)

SEND_CORS_METHODS = "POST, OPTIONS"
SEND_CORS_HEADERS = "Content-Type"


class CedulaCoordinator:
    """
    Coordinates the pipeline across layers
    Thin wrapper that owns one instance of each layer component
    """

    def __init__(self, settings, capture_backend=None, transport_factory=None):
        logger.info("Initializing CedulaCoordinator")
        self.settings = settings

        # Layer 1: Capture
        backend = capture_backend or create_backend(settings)
        self.acquisition = AcquisitionManager(backend, max_width=settings.capture_max_width)

        # Layer 2: Composition
        self.composer = DocumentComposer()

        # Layer 3: Delivery
        self.dispatcher = DeliveryDispatcher(settings, transport_factory=transport_factory)

        logger.info("CedulaCoordinator initialized successfully")

    def compose_from_data_urls(self, front_url, back_url, client_name=None):
        """
        Compose the PDF from two browser data URLs (Layer 1 → Layer 2)

        Returns:
            ComposedDocument: PDF bytes and filename
        """
        front = CapturedImage.from_data_url(front_url)
        back = CapturedImage.from_data_url(back_url)
        return self.composer.compose(front, back, client_name=client_name)


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def _coordinator() -> CedulaCoordinator:
    return current_app.extensions['cedula']


def _image_response(image):
    return jsonify({
        "success": True,
        "dataUrl": image.to_data_url(),
        "width": image.width,
        "height": image.height,
        "mimeType": image.mime_type
    })


def _error_response(error):
    status = error.status_code if isinstance(error, CedulaError) else 500
    return jsonify(handle_error(error)), status


def _allowed_origin():
    origins = [origin.strip() for origin in current_app.config['CORS_ORIGINS'].split(',')]
    if '*' in origins:
        return '*'
    origin = request.headers.get('Origin')
    return origin if origin in origins else None


def _with_send_cors(response):
    """Same CORS headers on the preflight and on the delivery response"""
    origin = _allowed_origin()
    if origin:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Methods'] = SEND_CORS_METHODS
        response.headers['Access-Control-Allow-Headers'] = SEND_CORS_HEADERS
        if origin != '*':
            response.headers['Vary'] = 'Origin'
    return response


api = Blueprint('cedula', __name__)


# ============================================================================
# Layer 1 - Capture
# ============================================================================

@api.route('/api/devices', methods=['GET'])
def list_devices():
    """Re-enumerate cameras and report the capture state"""
    acquisition = _coordinator().acquisition
    acquisition.refresh_devices()
    return jsonify({"success": True, **acquisition.status()})


@api.route('/start_camera', methods=['POST'])
def start_camera():
    """Start (or switch) the live stream"""
    payload = request.get_json(silent=True) or {}
    device_id = payload.get('deviceId') if isinstance(payload, dict) else None
    logger.info(f"Start camera request received (device: {device_id or 'default'})")

    acquisition = _coordinator().acquisition
    try:
        session = acquisition.start(device_id or None)
    except DeviceUnavailableError as e:
        return jsonify({**handle_error(e), "fallback": True}), e.status_code
    return jsonify({"success": True, "deviceId": session.active_device_id, "fallback": False})


@api.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop camera"""
    logger.info("Stop camera request received")
    _coordinator().acquisition.stop()
    return jsonify({"success": True})


@api.route('/capture', methods=['POST'])
def capture():
    """Take a still frame from the live stream"""
    logger.info("Capture request received from client")
    try:
        image = _coordinator().acquisition.capture()
    except CaptureError as e:
        return _error_response(e)
    return _image_response(image)


@api.route('/api/upload', methods=['POST'])
def upload_image():
    """Manual upload fallback: multipart/form-data with an 'image' field"""
    logger.info("Manual upload received")

    if 'image' not in request.files:
        return jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400

    image_file = request.files['image']
    try:
        image = _coordinator().acquisition.capture_from_file(
            image_file.read(), mime_type=image_file.mimetype
        )
    except CompositionError as e:
        return _error_response(e)
    return _image_response(image)


@api.route('/video_feed')
def video_feed():
    """MJPEG preview of the active stream"""
    acquisition = _coordinator().acquisition
    logger.info("Video feed requested")

    def generate():
        while acquisition.is_active:
            frame_bytes = acquisition.preview_jpeg()
            if frame_bytes is None:
                time.sleep(0.1)
                continue
            yield (b'--frame\r\n'
                   b'Content-Type: image/jpeg\r\n\r\n' + frame_bytes + b'\r\n')
        logger.info("Video feed ended (camera stopped)")

    return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')


# ============================================================================
# Layer 2 - Composition
# ============================================================================

@api.route('/api/compose', methods=['POST'])
def compose_document():
    """
    Compose the two-page PDF for download

    Request:
        {"front": "data:image/jpeg;base64,...", "back": "...", "clientName": "Ana"}
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not payload.get('front') or not payload.get('back'):
        return jsonify({
            "success": False,
            "error": "Debes capturar frente y reverso.",
            "error_code": "MISSING_IMAGES"
        }), 400

    client_name = payload.get('clientName')
    try:
        document = _coordinator().compose_from_data_urls(
            str(payload['front']), str(payload['back']),
            client_name=client_name if isinstance(client_name, str) else None
        )
    except CedulaError as e:
        return _error_response(e)

    return send_file(
        io.BytesIO(document.data),
        mimetype=PDF_MIME_TYPE,
        as_attachment=True,
        download_name=document.filename
    )


# ============================================================================
# Layer 3 - Delivery
# ============================================================================

@api.route('/api/send', methods=['POST', 'OPTIONS'])
def send_document():
    """
    E-mail the composed PDF

    Request:
        {"pdfBase64": "...", "filename": "...", "clientName": "...",
         "senderKey": "...", "to": "...", "subject": "...", "text": "...", "html": "..."}

    Response:
        {"ok": true, "message": "...", "errorId": "..."}
    """
    if request.method == 'OPTIONS':
        return _with_send_cors(Response(status=204))

    outcome = _coordinator().dispatcher.handle_payload(request.get_json(silent=True))
    response = jsonify(outcome.to_response())
    response.status_code = outcome.status_code
    return _with_send_cors(response)


# ============================================================================
# Service
# ============================================================================

@api.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "cedula-scanner",
        "version": "1.0.0"
    })


@api.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and capabilities"""
    coordinator = _coordinator()
    settings = coordinator.settings
    return jsonify({
        "success": True,
        "capture": coordinator.acquisition.status(),
        "smtp_configured": bool(settings.smtp_host and settings.smtp_port),
        "sender_profiles": sorted(settings.sender_profiles),
        "endpoints": {
            "health": "/health",
            "devices": "/api/devices",
            "capture": "/capture",
            "upload": "/api/upload",
            "compose": "/api/compose",
            "send": "/api/send",
            "video_feed": "/video_feed"
        }
    })


def create_app(settings=None, capture_backend=None, transport_factory=None):
    """
    Build the Flask application

    Args:
        settings: Configuration (default: read once from the environment)
        capture_backend: Capture backend override (default: from settings)
        transport_factory: Mail transport factory override (default: SMTP)

    Returns:
        Flask: Configured application
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.config['CORS_ORIGINS'] = settings.cors_origins
    CORS(app, origins=[origin.strip() for origin in settings.cors_origins.split(',')])

    app.extensions['cedula'] = CedulaCoordinator(
        settings,
        capture_backend=capture_backend,
        transport_factory=transport_factory
    )
    app.register_blueprint(api)
    if settings.camera_poll_interval > 0:
        app.extensions['cedula'].acquisition.watch_devices(settings.camera_poll_interval)
    return app


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    application = create_app()
    coordinator = application.extensions['cedula']
    coordinator.acquisition.refresh_devices()

    print("\n" + "=" * 60)
    print("CEDULA SCANNER")
    print("=" * 60)
    print("\n📡 API Endpoints:")
    print("  GET  /health           - Health check")
    print("  GET  /api/status       - Service status")
    print("  GET  /api/devices      - List cameras")
    print("  POST /start_camera     - Start camera")
    print("  POST /capture          - Capture still frame")
    print("  POST /api/upload       - Manual image upload")
    print("  POST /api/compose      - Build two-page PDF")
    print("  POST /api/send         - E-mail PDF")
    print("  GET  /video_feed       - MJPEG video stream")
    print("\n" + "=" * 60 + "\n")

    logger.info("Flask server starting")
    try:
        application.run(host='0.0.0.0', port=5000, threaded=True)
    finally:
        coordinator.acquisition.close()
