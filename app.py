# app.py
import logging
from flask import Flask, jsonify


def create_app(bot_manager) -> Flask:
    """Read-only status surface for a running engine."""
    app = Flask(__name__)

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "ok"}), 200

    @app.route('/status', methods=['GET'])
    def status():
        """Reports every active bot with its position state and trailing stop."""
        try:
            return jsonify(bot_manager.status()), 200
        except Exception as e:
            logging.error(f"Status request failed: {e}", exc_info=True)
            return jsonify({"status": "error", "error": str(e)}), 500

    return app
