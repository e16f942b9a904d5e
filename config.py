# config.py
import logging
import os
from pathlib import Path

BASE_DIR = Path(__file__).parent

# Root of the local repository store (owner/repo/path)
UPLOAD_DIR = Path(os.getenv("WATERMARK_UPLOAD_DIR", str(BASE_DIR / "uploads")))

# TrueType file used for every font tier; Pillow's bundled font is used when missing
FONT_PATH = os.getenv("WATERMARK_FONT_PATH", "DejaVuSans.ttf")

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# Upper bound on one watermark run; the original image is kept when exceeded
WATERMARK_TIMEOUT_SECONDS = float(os.getenv("WATERMARK_TIMEOUT_SECONDS", "5"))

OPTIMIZE_MAX_SIZE = (
    int(os.getenv("OPTIMIZE_MAX_WIDTH", "1920")),
    int(os.getenv("OPTIMIZE_MAX_HEIGHT", "1080")),
)
OUTPUT_QUALITY = int(os.getenv("OUTPUT_QUALITY", "85"))

DEFAULT_FOLDER = os.getenv("DEFAULT_FOLDER", "images")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging(name: str = "repo_uploader") -> logging.Logger:
    """Attach a single stream handler to the application logger."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(LOG_LEVEL)
    return logger
