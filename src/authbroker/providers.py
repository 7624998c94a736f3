"""Identity providers known to the broker.

Only Google is shipped.  Its client id is the public (installed-app) client
used by the Gemini CLI, so no client secret is required for the PKCE flow.
"""

from __future__ import annotations

from authbroker.models import ProviderConfig

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

GOOGLE = ProviderConfig(
    provider_id="google",
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    token_info_url="https://oauth2.googleapis.com/tokeninfo",
    docs_url="https://ai.google.dev/gemini-api/docs/oauth",
    default_client_id=(
        "681255809395-oo8ft2oprdrnp9e3aqf6av3hmdib135j.apps.googleusercontent.com"
    ),
    scopes=[
        CLOUD_PLATFORM_SCOPE,
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ],
    extra_scope="https://www.googleapis.com/auth/generative-language.retriever",
    required_scopes=[CLOUD_PLATFORM_SCOPE],
    scope_error_marker="insufficient authentication scopes",
)
