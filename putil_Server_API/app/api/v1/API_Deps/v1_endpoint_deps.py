# v1_endpoint_deps.py
# Description: This file is to serve as a sink for dependencies shared across the v1 endpoints.
# Imports
#
# 3rd-party Libraries
from fastapi.security import OAuth2PasswordBearer
#
# Local Imports
#
#######################################################################################################################
#
# Static Variables
# Tokens are issued by the external auth service; auto_error=False lets single-user mode skip the header entirely.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)

#
# End of v1_endpoint_deps.py
#######################################################################################################################
