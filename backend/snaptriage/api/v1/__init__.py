from snaptriage.api.v1.routes import api_router  # noqa: F401
