import os
import re
from datetime import date


HARVEST_HOME_PATH = os.environ.get("HARVEST_HOME", os.path.join(os.getcwd(), "harvest_runs"))

DATER_PATH = os.path.join(HARVEST_HOME_PATH, date.today().isoformat())

LOG_PATH = os.path.join(DATER_PATH, 'log_file')
OUTPUT_FILE = 'scraped_mp3s.json'
RETRY_FILE = 'retry_records.json'
CHUNKS_DIR = 'chunks'
TEMP_DIR = os.path.join(HARVEST_HOME_PATH, 'tmp')
STAGING_DIR = os.environ.get("HARVEST_STAGING_DIR", os.path.join(HARVEST_HOME_PATH, 'downloads'))


BASE_URL = 'https://www.chabad.org'
START_URL = 'https://www.chabad.org/multimedia/video_cdo/aid/1779405/jewish/Rambam-With-Rabbi-Gordon.htm'
PAGINATED_START_URL = 'https://www.chabad.org/library/tanya/tanya_cdo/aid/983056/jewish/Shaar-Hayichud-Vehaemunah.htm'


# Browser options
HEADLESS = os.environ.get("HARVEST_HEADLESS", "") == "1"  # Keep False so a human can solve CAPTCHAs and log in
USER_AGENT_S = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
VIEWPORT = {'width': 1920, 'height': 1080}
BROWSER_ARGS = ('--no-sandbox', '--disable-dev-shm-usage', '--disable-gpu', '--no-first-run', '--disable-blink-features=AutomationControlled')
STEALTH_SCRIPT = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined}); window.chrome = {runtime: {}};"


# Traversal options (seconds)
MAX_CRAWL_DEPTH = 10  # Recursion depth for "show more" links
MAX_PAGES = 50  # Safety valve for pagination
DELAY_BETWEEN_PAGES = 3
DELAY_BETWEEN_DOWNLOADS = 2
WAIT_FOR_LOAD = 2
DELAY_BETWEEN_RECORDS = 2
LEAF_LINK_MARKER = '/aid/'  # Pagination only collects links to numbered articles


# CAPTCHA gate options (seconds)
CAPTCHA_POLL_INTERVAL = 3
CAPTCHA_MAX_WAIT = 180
CAPTCHA_SETTLE_DELAY = 2
CAPTCHA_PROGRESS_INTERVAL = 15


# Retrieval options
MIN_FILE_BYTES = 1000  # Anything at or below this is an error page
RETRY_ATTEMPTS = 3
RETRY_DELAY = 3  # seconds
DOWNLOAD_POLL_INTERVAL = 2  # seconds
DOWNLOAD_MAX_WAIT = 120  # seconds
STAGED_SUFFIXES = ('.mp3',)
STAGED_MARKER = 'download'
PARTIAL_SUFFIXES = ('.crdownload', '.part', '.tmp')
STATIC_FALLBACK = True  # Last attempt uses aiohttp with the browser cookies
MANUAL_LOGIN_PROMPTS = 3


# Timeouts
pw_req_timeout = 60000  # ms
pw_settle_timeout = 15000  # ms
static_timeout = 120  # seconds
upload_timeout = 300  # seconds


# Storage options
AWS_REGION_DEFAULT = 'us-east-2'
S3_PREFIX = 'rabbi-gordon-classes/'
RAG_ID_PREFIX = 'chabad-mp3'
CONTENT_MIME = 'audio/mpeg'
RAG_FILE_TYPE = 'audio/mp3'
TITLE_SEGMENT_LEN = 80
TITLE_FILENAME_LEN = 100
HEADER_VALUE_LEN = 1024
UNKNOWN_ID = 'unknown'
UNTITLED = 'untitled'
CHUNK_SIZE = 50

# Ordered, first match wins
CONTENT_TYPE_RULES = (('/library/tanya/', 'tanya'), ('/multimedia/video_cdo/', 'rabbi-gordon'))
DEFAULT_CONTENT_TYPE = 'other'

RAG_SEARCH_FIELDS = {'contentType': 'audio_lecture', 'category': 'jewish_education', 'subcategory': 'torah_study', 'language': 'english'}
DEFAULT_TOPIC_TEXT = 'Torah topics'


# Selectors are tried in order
SHOW_MORE_SELECTORS = ('a.vs-video-row__header__more-link',)

LEAF_LINK_SELECTORS = ('a.watch-link', 'a.vs-video-card__link-wrapper', 'a#LinkWrapper')

DOWNLOAD_SELECTORS = ("a[href*='/multimedia/filedownload_cdo/']:has-text('Download this MP3')", "a.inline_block[href*='/multimedia/filedownload_cdo/']", "a[href*='filedownload']")

METADATA_SELECTORS = {
    'title': ('h1.article-header__title', 'h2', '.js-article-title', 'title'),
    'author': ('span.article-header__byline a', '.article-header__byline a'),
    'topics': ('tr.topics a',),
    'podcast': ('.podcast_icon a',),
    'synopsis': ('#TitleAndSynopsis .normal', '.video_info .normal'),
}

NEXT_PAGE_IMG_SELECTOR = 'img.nextPage'
NEXT_PAGE_TEXT_SELECTORS = ('a[href*="page"]', 'a[title*="next" i]', 'a[title*="more" i]')
NEXT_PAGE_WORDS = ('next', 'more', '>')

LOGIN_LINK_SELECTORS = ('a[href*="login"]', 'a[href*="signin"]', '.login', '#login', 'a[title*="log in" i]', 'a[title*="sign in" i]')
EMAIL_INPUT_SELECTORS = ('input[type="email"]', 'input[name*="email"]', 'input[id*="email"]')
PASSWORD_INPUT_SELECTORS = ('input[type="password"]', 'input[name*="password"]', 'input[id*="password"]')
SUBMIT_SELECTORS = ('button[type="submit"]', 'input[type="submit"]', '.submit', '#submit')


# CAPTCHA detection
CHALLENGE_SELECTORS = ('iframe[src*="recaptcha"]', 'div[class*="g-recaptcha"]', 'div[id*="recaptcha"]', 'div.captcha-container', 'form[action*="captcha"]')
CHALLENGE_TITLE_PHRASES = ('security check', 'verify you are human', 'bot protection')
CHALLENGE_TITLE_PAIRS = (('captcha', 'challenge'), ('cloudflare', 'checking'))
CHALLENGE_URL_PHRASES = ('/captcha',)
CHALLENGE_BODY_PHRASES = ('verify you are not a robot', 'prove you are human', 'complete the security check', 'i am not a robot', 'please verify that you are a human')


# Login state detection
LOGGED_OUT_PHRASES = ('please log in', 'please sign in')
LOGGED_IN_PHRASES = ('log out', 'logout', 'sign out', 'my account')



# Compile regex paterns
WHITE_REG = re.compile(r"\s{2,}")
AID_REG = re.compile(r"/aid/(\d+)")
TITLE_STRIP_REG = re.compile(r"[^a-zA-Z0-9\s\-]")
TITLE_SPACE_REG = re.compile(r"\s+")
HEADER_STRIP_REG = re.compile(r"[^\x20-\x7E]")

# Compile regex paterns for removing hidden HTML elements
STYLE_REG = re.compile(r"(display\s*:\s*none;?|visibility\s*:\s*hidden;?)")
CLASS_REG = re.compile('(hidden|d-none|sr-only)')
