"""
Google Sheets integration proxy
Lists the spreadsheets in a user's Google Drive on behalf of the browser.
"""

from flask import Blueprint, request, jsonify, current_app
import requests
import logging

logger = logging.getLogger(__name__)

integrations_bp = Blueprint('integrations', __name__, url_prefix='/functions')

DRIVE_FILES_URL = 'https://www.googleapis.com/drive/v3/files'
SPREADSHEET_QUERY = 'mimeType="application/vnd.google-apps.spreadsheet"'
SPREADSHEET_FIELDS = 'files(id,name,modifiedTime)'

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
}


class GoogleSheetsError(Exception):
    """Raised when the spreadsheet listing cannot be produced"""


def list_google_sheets(access_token, timeout=None):
    """Return the spreadsheets visible to the given OAuth access token"""
    if not access_token:
        raise GoogleSheetsError('Access token is required')

    url = current_app.config.get('GOOGLE_DRIVE_FILES_URL', DRIVE_FILES_URL)
    if timeout is None:
        timeout = current_app.config.get('GOOGLE_API_TIMEOUT', 10)

    try:
        response = requests.get(
            url,
            params={'q': SPREADSHEET_QUERY, 'fields': SPREADSHEET_FIELDS},
            headers={'Authorization': f'Bearer {access_token}'},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise GoogleSheetsError(f'Failed to list sheets: {exc}') from exc

    if not response.ok:
        raise GoogleSheetsError(f'Failed to list sheets: {response.text}')

    try:
        payload = response.json()
    except ValueError as exc:
        raise GoogleSheetsError('Failed to list sheets: invalid response') from exc

    sheets = payload.get('files') or []
    logger.info(f"Listed {len(sheets)} spreadsheets")
    return sheets


@integrations_bp.after_request
def add_cors_headers(response):
    response.headers.update(CORS_HEADERS)
    return response


@integrations_bp.route('/list-google-sheets', methods=['POST', 'OPTIONS'])
def list_google_sheets_view():
    """Proxy for the Drive listing; errors come back as {error} with status 500"""
    if request.method == 'OPTIONS':
        return current_app.response_class(status=204)

    try:
        body = request.get_json(silent=True) or {}
        sheets = list_google_sheets(body.get('accessToken'))
    except GoogleSheetsError as e:
        logger.error(f"Error in list-google-sheets: {e}")
        return jsonify({'error': str(e)}), 500
    except Exception as e:
        logger.exception("Unexpected error in list-google-sheets")
        return jsonify({'error': str(e) or 'Unknown error'}), 500

    return jsonify({'sheets': sheets})
