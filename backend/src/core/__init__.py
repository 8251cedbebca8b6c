"""
Cross-cutting pieces shared by the API and the order services: settings,
structured logging, bearer token verification, rate limiting and the Celery
app used for event hand-off.
"""
