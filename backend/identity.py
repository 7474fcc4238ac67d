"""Per-session player identity, persisted locally so a reload rejoins the same slot."""
import json
import logging
import os
import uuid
from typing import Optional

import config

logger = logging.getLogger(__name__)


def load_session_id(path: Optional[str] = None) -> str:
    """Return the stored session id, creating and saving one on first use.

    The id is an opaque token, not a credential.
    """
    path = path or config.SESSION_FILE
    try:
        with open(path, encoding="utf-8") as f:
            client_id = json.load(f).get("client_id")
        if isinstance(client_id, str) and client_id:
            return client_id
    except FileNotFoundError:
        pass
    except (OSError, ValueError, AttributeError) as e:
        logger.warning("Ignoring unreadable session file %s: %s", path, e)

    client_id = uuid.uuid4().hex
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"client_id": client_id}, f)
    logger.info("Created new session id in %s", path)
    return client_id
