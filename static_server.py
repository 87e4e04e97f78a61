"""Serve the built frontend and forward /api calls to the quiz backend.

Run it in front of ``app.py`` when the SPA and the API should share one
origin. Client-side routes fall back to ``index.html``.
"""

import os
import logging

from flask import Flask, request, jsonify, send_from_directory, Response
from werkzeug.security import safe_join
from dotenv import load_dotenv
import requests

load_dotenv()

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO'),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = Flask(__name__, static_folder=None)
app.config['BUILD_DIR'] = os.path.abspath(os.environ.get('FRONTEND_BUILD_DIR', 'build'))
app.config['BACKEND_URL'] = os.environ.get('BACKEND_URL', 'http://localhost:4000')
app.config['PROXY_TIMEOUT'] = int(os.environ.get('PROXY_TIMEOUT', 30))

# Headers that describe a single connection, not the message
HOP_BY_HOP_HEADERS = {
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailers', 'transfer-encoding', 'upgrade',
    'host', 'content-encoding', 'content-length',
}


def forwardable(headers):
    return [(k, v) for k, v in headers if k.lower() not in HOP_BY_HOP_HEADERS]


@app.route('/api/', defaults={'path': ''}, methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'])
@app.route('/api/<path:path>', methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'])
def proxy_api(path):
    """Relay the request to the backend and its answer back to the browser."""
    url = f"{app.config['BACKEND_URL'].rstrip('/')}/api/{path}"
    try:
        upstream = requests.request(
            request.method,
            url,
            params=list(request.args.items(multi=True)),
            data=request.get_data(),
            headers=dict(forwardable(request.headers.items())),
            allow_redirects=False,
            timeout=app.config['PROXY_TIMEOUT']
        )
    except requests.RequestException as e:
        app.logger.error(f'Backend unreachable for {request.method} {url}: {e}')
        return jsonify({'error': 'Bad Gateway', 'details': 'The quiz backend is unavailable.'}), 502

    return Response(
        upstream.content,
        status=upstream.status_code,
        headers=forwardable(upstream.raw.headers.items())
    )


@app.route('/', defaults={'path': ''})
@app.route('/<path:path>')
def serve_frontend(path):
    build_dir = app.config['BUILD_DIR']
    if path:
        full_path = safe_join(build_dir, path)
        if full_path and os.path.isfile(full_path):
            return send_from_directory(build_dir, path)
    index = os.path.join(build_dir, 'index.html')
    if not os.path.isfile(index):
        return jsonify({'error': 'Frontend build not found', 'details': build_dir}), 404
    return send_from_directory(build_dir, 'index.html')


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 3000))
    app.run(port=port, host='0.0.0.0')
