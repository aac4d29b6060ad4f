import uvicorn
from constants import HOST, LOG_FILE, LOG_LEVEL, PORT
from logging_config import get_logger, setup_logging

# Setup logging before uvicorn imports the app
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting LensRelay server on {HOST}:{PORT}")
    uvicorn.run("app:app", host=HOST, port=PORT)
