import os
import re
import logging

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
HOST = os.environ.get('HOST', '0.0.0.0')
PORT = int(os.environ.get('PORT', '7860'))

# Upstream ceiling in seconds, applied to connect and read
STREAM_TIMEOUT = float(os.environ.get('STREAM_TIMEOUT', '20'))
STREAM_USER_AGENT = os.environ.get('STREAM_USER_AGENT', DEFAULT_USER_AGENT)

AD_FILTER_MODE = os.environ.get('AD_FILTER_MODE', 'heuristic')
FANOUT_WORKERS = int(os.environ.get('FANOUT_WORKERS', '8'))


def split_keywords(text):
    """Split a newline or comma separated keyword list, dropping blanks."""
    return [k.strip() for k in re.split(r'[\n,]', text or '') if k.strip()]


def load_ad_keywords(environ=None):
    """
    Load the custom ad keyword list.
    AD_KEYWORDS_FILE is tried first (relative paths resolve against the
    working directory); AD_KEYWORDS is used when the file yields nothing.
    """
    environ = os.environ if environ is None else environ
    keywords = []

    keywords_file = environ.get('AD_KEYWORDS_FILE')
    if keywords_file:
        file_path = keywords_file if os.path.isabs(keywords_file) else os.path.join(os.getcwd(), keywords_file)
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                keywords = split_keywords(f.read())
            logger.info(f"Loaded {len(keywords)} ad keywords from file: {file_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Error reading ad keywords file {file_path}: {e}")

    if not keywords:
        keywords = split_keywords(environ.get('AD_KEYWORDS', ''))

    return keywords


AD_KEYWORDS = load_ad_keywords()
