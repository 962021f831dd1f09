APP_NAME = "RecordTrack"
APP_LOGGER = "record_track"

# ---- environment overrides ----
DATA_DIR_ENV = "RECORD_TRACK_DATA_DIR"
LOG_LEVEL_ENV = "RECORD_TRACK_LOG_LEVEL"

DATA_DIR = "data"
DB_FILE_NAME = "record_track.db"

TABLE_SCHEMA_VERSION = "schema_version"
SCHEMA_VERSION = "3"

# ---- collections ----
SHOPS = "shops"
PRODUCTS = "products"
SALES = "sales"
PAYMENTS = "payments"

# ---- pagination ----
SALES_PAGE_SIZE = 10
PAYMENTS_PAGE_SIZE = 10
PRODUCTS_PAGE_SIZE = 25

# busy timeout for the store connection (seconds)
FETCH_TIMEOUT_SECONDS = 20.0

MONEY_PLACES = 2
CURRENCY_SYMBOL = "₹"
