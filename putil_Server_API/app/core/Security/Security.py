# Security.py
#
# Description: Validates bearer tokens presented by clients in multi-user mode.
# Token issuance lives with the external auth service; this server only verifies.
#
# Imports
from typing import Optional

# 3rd-Party Libraries
import jwt  # PyJWT
from loguru import logger
from pydantic import BaseModel

# Local Imports
from putil_Server_API.app.core.config import settings

#######################################################################################################################

# --- JWT Handling ---

# Pydantic model for data extracted from the token payload
class TokenData(BaseModel):
    user_id: Optional[int] = None


def decode_access_token(token: str) -> Optional[TokenData]:
    """
    Decodes and validates a JWT access token.

    Args:
        token (str): The JWT token string.

    Returns:
        Optional[TokenData]: A Pydantic model containing the extracted user_id if the
                             token is valid and contains the 'sub' claim, otherwise None.
    """
    secret_key = settings["JWT_SECRET_KEY"]
    algorithm = settings["JWT_ALGORITHM"]
    try:
        # PyJWT handles expiration ('exp') check automatically.
        payload = jwt.decode(token, secret_key, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        logger.warning("Token validation failed: Signature has expired.")
        return None
    except jwt.InvalidSignatureError:
        logger.error("Token validation failed: Invalid signature.")
        return None
    except jwt.InvalidAlgorithmError:
        logger.error(f"Token validation failed: Invalid algorithm. Expected {algorithm}.")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Token validation failed: Invalid token - {e}")
        return None

    user_id_str = payload.get("sub")
    if user_id_str is None:
        logger.warning("Token decoded successfully, but 'sub' (user_id) claim is missing.")
        return None

    try:
        token_data = TokenData(user_id=int(user_id_str))
    except (ValueError, TypeError):
        logger.warning(f"Token 'sub' claim '{user_id_str}' could not be converted to integer.")
        return None

    logger.debug(f"Token successfully decoded for user_id: {token_data.user_id}")
    return token_data

#
# End of Security.py
# #####################################################################################################################
