import time

import pytest
from requests.structures import CaseInsensitiveDict

from app import app as flask_app


class FakeUpstream:
    """
    Stand-in for a streamed requests.Response.
    piece_size caps the chunk size, delay sleeps before every chunk and
    error is raised once the body has been delivered.
    """

    def __init__(self, body=b'', status_code=200, headers=None, url='https://cdn.example/',
                 piece_size=None, delay=0, error=None):
        if isinstance(body, str):
            body = body.encode('utf-8')
        self.body = body
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self.url = url
        self.piece_size = piece_size
        self.delay = delay
        self.error = error
        self.closed = False

    def iter_content(self, chunk_size=1):
        size = min(chunk_size, self.piece_size or chunk_size)
        for start in range(0, len(self.body), size):
            if self.delay:
                time.sleep(self.delay)
            yield self.body[start:start + size]
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


@pytest.fixture
def client():
    flask_app.config['TESTING'] = True
    with flask_app.test_client() as client:
        yield client
