"""
Virtual doorbell HTTP endpoint.
Lets home automation (or curl) press the button and inspect the bridge.
"""

import logging
import threading

from flask import Flask, jsonify, request

from doorbell_bridge._version import get_version_info
from doorbell_bridge.events import ButtonPressed

logger = logging.getLogger(__name__)


def create_app(bridge) -> Flask:
    """Create the Flask app bound to a running DoorbellBridge."""
    app = Flask(__name__)

    @app.route('/ding', methods=['POST'])
    def ding():
        """Press the doorbell button."""
        data = request.get_json(silent=True) or {}
        ding_id = data.get('ding_id')
        try:
            bridge.emit_threadsafe(ButtonPressed(
                camera_name=bridge.settings.doorbell.camera_name,
                ding_id=str(ding_id) if ding_id is not None else None,
                source="web",
            ))
        except RuntimeError as e:
            return jsonify({'error': str(e)}), 503
        logger.info(f"🔔 Virtual doorbell pressed (ID: {ding_id})")
        return jsonify({'status': 'accepted', 'ding_id': ding_id}), 202

    @app.route('/status', methods=['GET'])
    def status():
        return jsonify({
            'service': 'Doorbell SIP Bridge',
            'version': get_version_info(),
            **bridge.status()
        })

    @app.route('/healthz', methods=['GET'])
    def healthz():
        return jsonify({'status': 'healthy'})

    return app


def run_in_thread(app: Flask, host: str, port: int) -> threading.Thread:
    """Serve `app` from a daemon thread so it never outlives the bridge."""

    def _serve() -> None:
        try:
            app.run(host=host, port=port, debug=False, use_reloader=False)
        except OSError as e:
            logger.error(f"Flask server error: {e}")

    thread = threading.Thread(target=_serve, name="flask-server", daemon=True)
    thread.start()
    logger.info(f"🌐 Virtual doorbell listening on http://{host}:{port}")
    return thread
