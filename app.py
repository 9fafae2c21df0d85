from flask import Flask, request, Response, jsonify, stream_with_context
import threading
import logging

import config
from m3u8_ad_detector import AdFilterMode
from master_playlist import FilterCancelled, process_master_playlist
from stream_proxy import (
    CORS_HEADERS, MANIFEST_CACHE_CONTROL, MANIFEST_CONTENT_TYPE,
    MissingParameter, ProxyRequest, StreamProxyError, UpstreamTimeout, proxy_stream,
)

app = Flask(__name__)

logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@app.after_request
def add_cors_headers(response):
    for name, value in CORS_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


def preflight():
    return Response('', status=204, headers=CORS_HEADERS)


def error_response(error):
    return jsonify({'error': error.message}), error.status


@app.route('/api/iptv/stream', methods=['GET', 'HEAD', 'OPTIONS'])
def iptv_stream():
    """Relay for HLS manifests and segments; manifests come back pointing at this endpoint"""
    if request.method == 'OPTIONS':
        return preflight()

    try:
        proxy_request = ProxyRequest.from_args(request.args)
        result = proxy_stream(proxy_request, range_header=request.headers.get('Range'),
                              head=request.method == 'HEAD')
    except StreamProxyError as e:
        return error_response(e)

    if isinstance(result.body, (str, bytes, list)):
        body = result.body
    else:
        body = stream_with_context(result.body)
    return Response(body, status=result.status, content_type=result.content_type, headers=result.headers)


@app.route('/api/adfilter', methods=['GET', 'OPTIONS'])
def ad_filtered_playlist():
    """Fetch a playlist (and every sub-playlist of a master) and return it with ads removed"""
    if request.method == 'OPTIONS':
        return preflight()

    url = request.args.get('url', '').strip()
    if not url:
        return error_response(MissingParameter())
    mode = AdFilterMode.parse(request.args.get('mode') or config.AD_FILTER_MODE)

    # Bound the whole fan-out so an abandoned request cannot leave fetches running
    cancel_event = threading.Event()
    deadline = threading.Timer(config.STREAM_TIMEOUT * 2, cancel_event.set)
    deadline.daemon = True
    deadline.start()
    try:
        content = process_master_playlist(
            url, mode, config.AD_KEYWORDS,
            user_agent=request.args.get('ua') or None,
            referer=request.args.get('referer') or None,
            cancel_event=cancel_event,
        )
    except FilterCancelled:
        logger.warning(f"Ad filtering of {url} did not finish in time")
        return error_response(UpstreamTimeout())
    except StreamProxyError as e:
        return error_response(e)
    finally:
        deadline.cancel()

    return Response(content, status=200, content_type=MANIFEST_CONTENT_TYPE,
                    headers={'Cache-Control': MANIFEST_CACHE_CONTROL})


@app.route('/')
def index():
    """Liveness check"""
    logger.info(f"Main page access from {request.remote_addr} - User-Agent: {request.headers.get('User-Agent', 'Unknown')}")
    return "Proxy started!"


if __name__ == '__main__':
    logger.info("Proxy started!")
    app.run(host=config.HOST, port=config.PORT, debug=False)
