#!/usr/bin/env python3
"""
Flask API server for Galvaniy Labs
Generates interactive physics lab reports with LabReportAgent and serves
live report sessions, exports, history and the admin panel API.
"""

import os
import io
import re
import asyncio
import threading
from pathlib import Path
from datetime import datetime
from flask import Flask, Response, request, jsonify, send_file, session
from flask_cors import CORS
from werkzeug.utils import secure_filename

# Load environment variables from .env file
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # python-dotenv not installed, will use system env vars

from agents.LabReportAgent import generate_lab_report
from engine.document_assembler import build_interactive_html, build_static_pdf, interactive_filename, pdf_filename
from engine.errors import (
    CellOutOfRange, GenerationError, InvalidCellInput, LabReportError, MalformedPayload,
    SchemaViolation, SessionClosed, UnknownSimulationParam,
)
from engine.report_schema import validate_report
from engine.report_session import ReportSession
from tools.manual_reader_tool import ManualReadError, read_manual_text
from tools.storage_service import StorageService

app = Flask(__name__)
CORS(app, supports_credentials=True)  # Enable CORS for frontend

# Configuration
BASE_DIR = Path(__file__).parent
UPLOAD_FOLDER = Path(os.getenv('UPLOAD_FOLDER', BASE_DIR / 'uploads'))
DATA_FOLDER = Path(os.getenv('LAB_DATA_DIR', BASE_DIR / 'data'))
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
ALLOWED_EXTENSIONS = {'pdf'}
EXPERIMENT_CODE_PATTERN = re.compile(r'^[A-Za-z]+-\d+$')
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
MAX_ADVANCE_FRAMES = 600
LIVE_SESSION_ENDPOINT = '/api/session'

app.config['UPLOAD_FOLDER'] = str(UPLOAD_FOLDER)
app.config['DATA_FOLDER'] = str(DATA_FOLDER)
app.config['MAX_CONTENT_LENGTH'] = MAX_FILE_SIZE
app.secret_key = os.getenv('SECRET_KEY', 'galvaniy-labs-dev-secret')

# One open report session per signed-in user
ACTIVE_SESSIONS = {}
ACTIVE_SESSIONS_LOCK = threading.Lock()
_storage_services = {}


def get_storage():
    """Storage for the configured data folder"""
    folder = app.config['DATA_FOLDER']
    if folder not in _storage_services:
        _storage_services[folder] = StorageService(folder)
    return _storage_services[folder]


def allowed_file(filename):
    """Check if file has allowed extension"""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def current_user():
    email = session.get('email')
    if not email:
        return None
    return get_storage().get_user(email)


def close_active_session(email):
    with ACTIVE_SESSIONS_LOCK:
        report_session = ACTIVE_SESSIONS.pop(email, None)
    if report_session is not None:
        report_session.close()
        print(f"[API] Closed report session for {email}", flush=True)


def engine_error_response(error):
    """Map engine errors to JSON error bodies"""
    if isinstance(error, SessionClosed):
        return jsonify({'error': str(error)}), 409
    if isinstance(error, (MalformedPayload, SchemaViolation)):
        return jsonify({'error': f'Invalid report: {error}'}), 422
    if isinstance(error, (InvalidCellInput, CellOutOfRange, UnknownSimulationParam)):
        return jsonify({'error': str(error)}), 400
    return jsonify({'error': str(error)}), 500


def is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


@app.route('/health', methods=['GET'])
def health():
    """Health check endpoint"""
    return jsonify({'status': 'healthy'}), 200


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

@app.route('/api/auth/session', methods=['POST'])
def sign_in():
    """
    Sign in (registering on first use)

    Expects: JSON {"email": "..."}
    Returns: the user and today's usage
    """
    try:
        data = request.get_json(silent=True) or {}
        email = str(data.get('email', '')).strip().lower()
        if not EMAIL_PATTERN.match(email):
            return jsonify({'error': 'A valid email address is required'}), 400

        storage = get_storage()
        user = storage.register_user(email)
        session['email'] = email
        print(f"[API] Signed in {email}", flush=True)
        return jsonify({'success': True, 'user': user, 'usage': storage.usage(email)}), 200

    except Exception as e:
        print(f"[API] ERROR: Error in sign_in endpoint: {e}", flush=True)
        return jsonify({'error': f'Server error: {str(e)}'}), 500


@app.route('/api/auth/me', methods=['GET'])
def who_am_i():
    user = current_user()
    if user is None:
        return jsonify({'error': 'Not signed in'}), 401
    return jsonify({'user': user, 'usage': get_storage().usage(user['email'])}), 200


@app.route('/api/auth/logout', methods=['POST'])
def sign_out():
    email = session.pop('email', None)
    if email:
        close_active_session(email)
    return jsonify({'success': True}), 200


# ---------------------------------------------------------------------------
# Generation and history
# ---------------------------------------------------------------------------

@app.route('/api/generate-report', methods=['POST'])
def generate_report_endpoint():
    """
    Generate, validate and save a lab report

    Expects: JSON {"experimentCode": "A-2"}
    Returns: the saved report and updated usage
    """
    try:
        user = current_user()
        if user is None:
            return jsonify({'error': 'Not signed in'}), 401
        if user.get('isRevoked'):
            return jsonify({'error': 'Your access has been revoked. Contact an administrator.'}), 403

        data = request.get_json(silent=True) or {}
        code = str(data.get('experimentCode', '')).strip()
        if not EXPERIMENT_CODE_PATTERN.match(code):
            return jsonify({'error': "Invalid experiment code format. Use a code like 'A-2' or 'C-12'."}), 400
        code = code.upper()

        storage = get_storage()
        email = user['email']
        if not storage.check_daily_limit(email):
            return jsonify({'error': 'Daily report limit reached. Try again tomorrow.', 'usage': storage.usage(email)}), 403

        print(f"[API] Generating report {code} for {email}...", flush=True)
        try:
            text = asyncio.run(generate_lab_report(code, storage.get_full_context()))
        except GenerationError as e:
            print(f"[API] ERROR: Generation failed: {e}", flush=True)
            error_msg = str(e)
            if 'API_KEY' in error_msg:
                return jsonify({'error': error_msg}), 500
            return jsonify({'error': error_msg}), 502

        try:
            validate_report(text)
        except (MalformedPayload, SchemaViolation) as e:
            # Not saved and does not use up a daily credit
            print(f"[API] ERROR: Generated report is invalid: {e}", flush=True)
            return jsonify({'error': f'Generated report failed validation: {e}'}), 422

        report = storage.save_report(email, code, text)
        storage.increment_daily_limit(email)
        print(f"[API] Saved report {report['id']} ({code})", flush=True)

        return jsonify({
            'success': True,
            'report': report,
            'usage': storage.usage(email)
        }), 200

    except Exception as e:
        print(f"[API] ERROR: Error in generate_report endpoint: {e}", flush=True)
        return jsonify({'error': f'Server error: {str(e)}'}), 500


@app.route('/api/reports', methods=['GET'])
def list_reports():
    user = current_user()
    if user is None:
        return jsonify({'error': 'Not signed in'}), 401
    return jsonify({'reports': get_storage().get_reports(user['email'])}), 200


def _load_report(report_id):
    """(user, report, error_response) for the signed-in user's report"""
    user = current_user()
    if user is None:
        return None, None, (jsonify({'error': 'Not signed in'}), 401)
    report = get_storage().get_report(user['email'], report_id)
    if report is None:
        return user, None, (jsonify({'error': f'Report not found: {report_id}'}), 404)
    return user, report, None


def _open_session(user, report):
    model = validate_report(report['content'])
    report_session = ReportSession(model, report['experimentCode'], report_id=report['id'])
    with ACTIVE_SESSIONS_LOCK:
        previous = ACTIVE_SESSIONS.get(user['email'])
        ACTIVE_SESSIONS[user['email']] = report_session
    if previous is not None:
        previous.close()
    print(f"[API] Opened report {report['id']} for {user['email']}", flush=True)
    return report_session


@app.route('/api/reports/<report_id>', methods=['GET'])
def get_report(report_id):
    user, report, error = _load_report(report_id)
    if error:
        return error
    return jsonify({'report': report}), 200


@app.route('/api/reports/<report_id>/open', methods=['POST'])
def open_report(report_id):
    """Open a live session for a report, closing any previous one"""
    try:
        user, report, error = _load_report(report_id)
        if error:
            return error
        report_session = _open_session(user, report)
        return jsonify(report_session.snapshot()), 200
    except LabReportError as e:
        return engine_error_response(e)
    except Exception as e:
        print(f"[API] ERROR: Error opening report: {e}", flush=True)
        return jsonify({'error': f'Server error: {str(e)}'}), 500


@app.route('/api/reports/<report_id>/view', methods=['GET'])
def view_report(report_id):
    """Served interactive view: opens a live session and wires the page to it"""
    try:
        user, report, error = _load_report(report_id)
        if error:
            return error
        report_session = _open_session(user, report)
        page = build_interactive_html(
            report_session.model,
            report['experimentCode'],
            analysis_html=report_session.analysis.html,
            live_endpoint=LIVE_SESSION_ENDPOINT,
        )
        return Response(page, mimetype='text/html')
    except LabReportError as e:
        return engine_error_response(e)
    except Exception as e:
        print(f"[API] ERROR: Error rendering report view: {e}", flush=True)
        return jsonify({'error': f'Server error: {str(e)}'}), 500


@app.route('/api/reports/<report_id>/export/<fmt>', methods=['GET'])
def export_report(report_id, fmt):
    """Download the report as interactive HTML or static PDF"""
    try:
        user, report, error = _load_report(report_id)
        if error:
            return error
        if fmt not in ('html', 'pdf'):
            return jsonify({'error': f'Unknown export format: {fmt}'}), 400

        model = validate_report(report['content'])
        code = report['experimentCode']
        if fmt == 'html':
            body = build_interactive_html(model, code).encode('utf-8')
            return send_file(io.BytesIO(body), mimetype='text/html', as_attachment=True,
                             download_name=interactive_filename(code))
        body = build_static_pdf(model, code)
        return send_file(io.BytesIO(body), mimetype='application/pdf', as_attachment=True,
                         download_name=pdf_filename(code))
    except LabReportError as e:
        return engine_error_response(e)
    except Exception as e:
        print(f"[API] ERROR: Error exporting report: {e}", flush=True)
        return jsonify({'error': f'Server error: {str(e)}'}), 500


# ---------------------------------------------------------------------------
# Live report session
# ---------------------------------------------------------------------------

def _session_or_error():
    user = current_user()
    if user is None:
        return None, (jsonify({'error': 'Not signed in'}), 401)
    with ACTIVE_SESSIONS_LOCK:
        report_session = ACTIVE_SESSIONS.get(user['email'])
    if report_session is None:
        return None, (jsonify({'error': 'No report is open'}), 404)
    return report_session, None


@app.route('/api/session', methods=['GET', 'DELETE'])
def report_session_endpoint():
    if request.method == 'DELETE':
        user = current_user()
        if user is None:
            return jsonify({'error': 'Not signed in'}), 401
        close_active_session(user['email'])
        return jsonify({'success': True}), 200

    report_session, error = _session_or_error()
    if error:
        return error
    try:
        return jsonify(report_session.snapshot()), 200
    except LabReportError as e:
        return engine_error_response(e)


@app.route('/api/session/cells', methods=['POST'])
def set_cell():
    """
    Edit one table cell and recompute analysis and chart

    Expects: JSON {"row": 0, "col": 1, "value": "2.5"}
    """
    report_session, error = _session_or_error()
    if error:
        return error
    try:
        data = request.get_json(silent=True) or {}
        row, col = data.get('row'), data.get('col')
        if not is_int(row) or not is_int(col):
            return jsonify({'error': 'row and col must be integers'}), 400
        if 'value' not in data:
            return jsonify({'error': 'value is required'}), 400
        value = data['value']
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            return jsonify({'error': f'Invalid numeric input {value!r}'}), 400

        report_session.set_cell(row, col, value)
        return jsonify(report_session.snapshot()), 200
    except LabReportError as e:
        return engine_error_response(e)
    except Exception as e:
        print(f"[API] ERROR: Error updating cell: {e}", flush=True)
        return jsonify({'error': f'Server error: {str(e)}'}), 500


@app.route('/api/session/rows', methods=['POST'])
def append_row():
    report_session, error = _session_or_error()
    if error:
        return error
    try:
        index = report_session.append_row()
        return jsonify(dict(report_session.snapshot(), rowIndex=index)), 200
    except LabReportError as e:
        return engine_error_response(e)


def _simulation_body(report_session):
    return report_session.simulation_view()


@app.route('/api/session/simulation/toggle', methods=['POST'])
def toggle_simulation():
    report_session, error = _session_or_error()
    if error:
        return error
    try:
        report_session.toggle_simulation()
        return jsonify(_simulation_body(report_session)), 200
    except LabReportError as e:
        return engine_error_response(e)


@app.route('/api/session/simulation/params', methods=['POST'])
def set_simulation_param():
    """
    Move one simulation control

    Expects: JSON {"id": "length", "value": 120}
    """
    report_session, error = _session_or_error()
    if error:
        return error
    try:
        data = request.get_json(silent=True) or {}
        param_id = data.get('id')
        if not isinstance(param_id, str):
            return jsonify({'error': 'id is required'}), 400
        try:
            report_session.set_param(param_id, data.get('value'))
        except (TypeError, ValueError):
            return jsonify({'error': f'Invalid value for {param_id}: {data.get("value")!r}'}), 400
        return jsonify(_simulation_body(report_session)), 200
    except LabReportError as e:
        return engine_error_response(e)


@app.route('/api/session/simulation/advance', methods=['POST'])
def advance_simulation():
    """Step a running simulation by N frames (1 to 600)"""
    report_session, error = _session_or_error()
    if error:
        return error
    try:
        data = request.get_json(silent=True) or {}
        frames = data.get('frames', 1)
        if not is_int(frames) or not 1 <= frames <= MAX_ADVANCE_FRAMES:
            return jsonify({'error': f'frames must be an integer between 1 and {MAX_ADVANCE_FRAMES}'}), 400
        report_session.advance(frames)
        return jsonify(_simulation_body(report_session)), 200
    except LabReportError as e:
        return engine_error_response(e)


@app.route('/api/session/simulation/frame', methods=['GET'])
def simulation_frame():
    report_session, error = _session_or_error()
    if error:
        return error
    try:
        return jsonify(_simulation_body(report_session)), 200
    except LabReportError as e:
        return engine_error_response(e)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

def _admin_or_error():
    user = current_user()
    if user is None:
        return None, (jsonify({'error': 'Not signed in'}), 401)
    if user.get('role') != 'admin':
        return None, (jsonify({'error': 'Admin access required'}), 403)
    return user, None


@app.route('/api/admin/references', methods=['GET', 'POST'])
def admin_references():
    admin, error = _admin_or_error()
    if error:
        return error
    storage = get_storage()
    if request.method == 'GET':
        return jsonify({'references': storage.get_references()}), 200

    data = request.get_json(silent=True) or {}
    text = str(data.get('text', '')).strip()
    if not text:
        return jsonify({'error': 'Reference text is required'}), 400
    references = storage.add_reference(text)
    print(f"[API] {admin['email']} added reference #{len(references) - 1}", flush=True)
    return jsonify({'references': references}), 200


@app.route('/api/admin/references/<int:index>', methods=['DELETE'])
def admin_remove_reference(index):
    admin, error = _admin_or_error()
    if error:
        return error
    try:
        references = get_storage().remove_reference(index)
    except IndexError as e:
        return jsonify({'error': str(e)}), 404
    return jsonify({'references': references}), 200


@app.route('/api/admin/references/upload', methods=['POST'])
def admin_upload_reference():
    """
    Upload a lab manual PDF and store its text as a reference

    Expects: multipart/form-data with 'file' field
    """
    admin, error = _admin_or_error()
    if error:
        return error
    try:
        if 'file' not in request.files:
            return jsonify({'error': 'No file provided'}), 400

        file = request.files['file']
        if file.filename == '':
            return jsonify({'error': 'No file selected'}), 400
        if not allowed_file(file.filename):
            return jsonify({'error': 'Only PDF files are allowed'}), 400

        filename = secure_filename(file.filename)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        upload_dir = Path(app.config['UPLOAD_FOLDER'])
        upload_dir.mkdir(parents=True, exist_ok=True)
        file_path = upload_dir / f"{timestamp}_{filename}"
        file.save(str(file_path))
        print(f"File uploaded: {file_path}", flush=True)

        try:
            text = read_manual_text(file_path)
        except ManualReadError as e:
            return jsonify({'error': str(e)}), 400

        references = get_storage().add_reference(f"[{filename}]\n{text}")
        return jsonify({
            'success': True,
            'characters': len(text),
            'references': references
        }), 200

    except Exception as e:
        print(f"[API] ERROR: Error in upload endpoint: {e}", flush=True)
        return jsonify({'error': f'Server error: {str(e)}'}), 500


@app.route('/api/admin/users', methods=['GET'])
def admin_users():
    admin, error = _admin_or_error()
    if error:
        return error
    storage = get_storage()
    users = [dict(user, usage=storage.usage(user['email'])) for user in storage.get_all_users()]
    return jsonify({'users': users}), 200


@app.route('/api/admin/users/<path:email>/revoke', methods=['POST'])
def admin_revoke_user(email):
    admin, error = _admin_or_error()
    if error:
        return error
    user = get_storage().revoke_user(email)
    if user is None:
        return jsonify({'error': f'User not found: {email}'}), 404
    if user['isRevoked']:
        close_active_session(email)
    return jsonify({'user': user}), 200


@app.route('/api/admin/users/<path:email>/limit', methods=['POST'])
def admin_user_limit(email):
    admin, error = _admin_or_error()
    if error:
        return error
    data = request.get_json(silent=True) or {}
    limit = data.get('limit')
    if not is_int(limit) or limit < 0:
        return jsonify({'error': 'limit must be a non-negative integer'}), 400
    user = get_storage().update_user_limit(email, limit)
    if user is None:
        return jsonify({'error': f'User not found: {email}'}), 404
    return jsonify({'user': user}), 200


if __name__ == '__main__':
    # Get port from environment or default to 5001 (5000 is often used by AirPlay on macOS)
    port = int(os.getenv('PORT', 5001))
    debug = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'

    print(f"Starting Galvaniy Labs backend server on port {port}", flush=True)
    app.run(host='0.0.0.0', port=port, debug=debug)
