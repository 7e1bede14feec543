# =============================================================================
# Booth Client -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("booth_client")
logger.addHandler(logging.NullHandler())
