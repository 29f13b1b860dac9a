import os
import json
import sqlite3

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from database import get_db_connection, init_db
from data_paths import DATA_ROOT, ensure_data_root
from services.analytics import get_analytics_engine
from services.snapshot import SnapshotUnavailableError

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
TIMEZONE_ENV = 'ORDER_ANALYTICS_TIMEZONE'
DEFAULT_PORT = 5002

app = Flask(__name__)
app.json.sort_keys = False

_db_bootstrapped = False


@app.before_request
def _ensure_database_initialized():
    """Guarantee the SQLite schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    try:
        init_db()
        _db_bootstrapped = True
    except sqlite3.Error as exc:
        # Analytics requests surface this as a retryable 503 on their own.
        app.logger.exception("Failed to initialize database before request: %s", exc)


ensure_data_root()

DATA_DIR = DATA_ROOT
SETTINGS_FILE = DATA_DIR / 'settings.json'


def read_json_file(file_path):
    if not os.path.exists(file_path) or os.path.getsize(file_path) == 0:
        return {}
    with open(file_path, 'r') as f:
        try:
            return json.load(f)
        except json.JSONDecodeError:
            app.logger.error(f"JSONDecodeError for {file_path}")
            return {}


def get_reporting_timezone():
    """Timezone used to decide which calendar day an order falls on."""
    override = os.environ.get(TIMEZONE_ENV, '').strip()
    if override:
        return override
    settings = read_json_file(SETTINGS_FILE)
    if isinstance(settings, dict) and settings.get('timezone'):
        return str(settings['timezone'])
    return 'UTC'


def _snapshot_unavailable_response(exc):
    app.logger.exception("Analytics snapshot unavailable: %s", exc)
    return jsonify({
        'message': 'Analytics data is temporarily unavailable. Please try again.',
        'retryable': True,
    }), 503


@app.route('/api/analytics/options', methods=['GET'])
def api_analytics_options():
    engine = get_analytics_engine()
    return jsonify({'parameter': engine.window_options()})


@app.route('/api/analytics', methods=['GET'])
def api_analytics_report():
    engine = get_analytics_engine()
    window_days = request.args.get('days')
    conn = None
    try:
        conn = get_db_connection()
        report = engine.run_report(conn, window_days, timezone_name=get_reporting_timezone())
        return jsonify({'report': report.to_dict()})
    except ValueError as exc:
        return jsonify({'message': str(exc)}), 400
    except (SnapshotUnavailableError, sqlite3.Error) as exc:
        return _snapshot_unavailable_response(exc)
    finally:
        if conn is not None:
            conn.close()


@app.route('/api/dashboard', methods=['GET'])
def api_dashboard_stats():
    engine = get_analytics_engine()
    conn = None
    try:
        conn = get_db_connection()
        stats = engine.run_dashboard(conn, timezone_name=get_reporting_timezone())
        return jsonify({'stats': stats.to_dict()})
    except (SnapshotUnavailableError, sqlite3.Error) as exc:
        return _snapshot_unavailable_response(exc)
    finally:
        if conn is not None:
            conn.close()


def main():
    port = int(os.environ.get('ORDER_ANALYTICS_PORT', DEFAULT_PORT))
    print(f"Starting order analytics server on port {port}.")
    app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    init_db()
    main()
