import os

# --- Configuration ---
VERSION = '1.0.0'
USER_AGENT = f'RouteFlux-DataFetcher/{VERSION}'

# Relative paths by default, resolved against the working directory.
# Each can be overridden with an environment variable or a CLI flag.
CACHE_DIR = os.getenv('ROUTEFLUX_CACHE_DIR', os.path.join('data', 'cache'))
OUTPUT_DIR = os.getenv('ROUTEFLUX_OUTPUT_DIR', os.path.join('public', 'data'))
GEOIP_DATABASE_PATH = os.getenv('ROUTEFLUX_GEOIP_PATH', os.path.join('data', 'geoip', 'GeoLite2-City.mmdb'))
MAX_GEOIP_CACHE_SIZE = 50000

# --- Data Sources ---
ONIONOO_DETAILS_URL = 'https://onionoo.torproject.org/details?type=relay&running=true'
COLLECTOR_ARCHIVE_URL = 'https://collector.torproject.org/archive/relay-descriptors'
METRICS_COUNTRY_URL = 'https://metrics.torproject.org/userstats-relay-country.csv'

# --- Parallelism ---
DEFAULT_PARALLEL_DAY = 1
DEFAULT_PARALLEL_MONTH = 8
DEFAULT_PARALLEL_YEAR = 16
# xz -T4 and -T0 decompress at the same speed, -T4 peaks at ~6GB RAM vs ~9GB
DEFAULT_XZ_THREADS = 4
BLOCKING_POOL_SIZE = 4  # Threads for consensus reads, JSON caches and index rebuilds
MAX_COUNTRY_FETCH_CONCURRENCY = 6

# --- Retry Configuration ---
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0  # seconds, doubled on every attempt
RETRY_JITTER = 2.0  # seconds, uniform random 0..RETRY_JITTER added to each delay
COUNTRY_BATCH_RETRIES = 3
COUNTRY_DAILY_RETRIES = 2

# --- Timeouts (seconds) ---
DOWNLOAD_CONNECT_TIMEOUT = 30  # Connection establishment for archive downloads
DOWNLOAD_STALL_TIMEOUT = 15  # Abort when no bytes arrive for this long
ARCHIVE_VERIFY_TIMEOUT = 120
ONIONOO_TIMEOUT = 120
COUNTRY_BATCH_TIMEOUT = 180  # Tor Metrics is slow on month-long ranges
COUNTRY_DAILY_TIMEOUT = 30

# --- Archive Handling ---
MIN_ARCHIVE_SIZE = 1000  # bytes; anything smaller is treated as missing
MAX_SAFE_PATH_LENGTH = 500
SUBPROCESS_LINE_LIMIT = 1024 * 1024  # Longest descriptor line accepted from tar
BOGUS_BANDWIDTH = 2147483647  # INT32_MAX, reported by relays with an overflowed counter

# --- Source Selection ---
RECENT_DAYS = 2  # Onionoo only keeps a short trailing window
LIVE_UPTIME_BITMAP = 0xFFFFFF

# --- Country Statistics ---
BATCH_COUNTRY_MIN_DATES = 7  # Monthly batch requests only pay off for multi-day runs
COUNTRY_FALLBACK_WINDOW_DAYS = 10
COUNTRY_FALLBACK_SEARCH_DAYS = 7
COUNTRY_STATS_FIRST_DATE = '2011-09-01'  # No per-country estimates before this date
COUNTRY_STATS_DELAY_DAYS = 3  # Tor Metrics publishing delay
EMPTY_COUNTRY_FILE_THRESHOLD = 200  # bytes; populated country files are 4KB+

# --- Geolocation ---
CENTROID_JITTER_DEGREES = 1.0
DEFAULT_COUNTRY = 'US'
MERCATOR_MAX_LATITUDE = 85.05113

# --- Global Constants ---
# Country centroids used when an address cannot be geolocated (lng, lat)
COUNTRY_CENTROIDS = {
    'AD': (1.52, 42.55), 'AE': (53.85, 23.42), 'AF': (67.71, 33.94), 'AL': (20.17, 41.15),
    'AM': (45.04, 40.07), 'AO': (17.87, -11.20), 'AR': (-63.62, -38.42), 'AT': (14.55, 47.52),
    'AU': (133.78, -25.27), 'AZ': (47.58, 40.14), 'BA': (17.68, 43.92), 'BD': (90.36, 23.68),
    'BE': (4.47, 50.50), 'BG': (25.49, 42.73), 'BR': (-51.93, -14.24), 'BY': (27.95, 53.71),
    'CA': (-106.35, 56.13), 'CH': (8.23, 46.82), 'CL': (-71.54, -35.68), 'CN': (104.20, 35.86),
    'CO': (-74.30, 4.57), 'CZ': (15.47, 49.82), 'DE': (10.45, 51.17), 'DK': (9.50, 56.26),
    'EE': (25.01, 58.60), 'EG': (30.80, 26.82), 'ES': (-3.75, 40.46), 'FI': (25.75, 61.92),
    'FR': (2.21, 46.23), 'GB': (-3.44, 55.38), 'GE': (43.36, 42.32), 'GR': (21.82, 39.07),
    'HK': (114.11, 22.40), 'HR': (15.20, 45.10), 'HU': (19.50, 47.16), 'ID': (113.92, -0.79),
    'IE': (-8.24, 53.41), 'IL': (34.85, 31.05), 'IN': (78.96, 20.59), 'IR': (53.69, 32.43),
    'IS': (-19.02, 64.96), 'IT': (12.57, 41.87), 'JP': (138.25, 36.20), 'KR': (127.77, 35.91),
    'KZ': (66.92, 48.02), 'LT': (23.88, 55.17), 'LU': (6.13, 49.82), 'LV': (24.60, 56.88),
    'MD': (28.37, 47.41), 'MX': (-102.55, 23.63), 'MY': (101.98, 4.21), 'NL': (5.29, 52.13),
    'NO': (8.47, 60.47), 'NZ': (174.89, -40.90), 'PL': (19.15, 51.92), 'PT': (-8.22, 39.40),
    'RO': (24.97, 45.94), 'RS': (21.01, 44.02), 'RU': (105.32, 61.52), 'SE': (18.64, 60.13),
    'SG': (103.82, 1.35), 'SI': (15.00, 46.15), 'SK': (19.70, 48.67), 'TH': (100.99, 15.87),
    'TR': (35.24, 38.96), 'TW': (120.96, 23.70), 'UA': (31.17, 48.38), 'US': (-95.71, 37.09),
    'VN': (108.28, 14.06), 'ZA': (22.94, -30.56),
}
