import logging

logger = logging.getLogger(__name__)

# Signed payment payloads are neither logged nor decoded.
UNLOGGED_BODY_SUFFIXES = ("/webhook",)
MAX_LOGGED_CONTENT = 2000


class RequestResponseLoggingMiddleware:
    """
    Middleware that logs each coin API request method, path and body,
    and the corresponding response status and content.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        path = request.get_full_path()
        request_body = ""

        if request.path.rstrip("/").endswith(UNLOGGED_BODY_SUFFIXES):
            request_body = "<Payment webhook - body not logged>"
        elif "multipart/form-data" in request.META.get("CONTENT_TYPE", ""):
            request_body = "<Multipart form data - body not logged>"
        elif request.method in ("POST", "PUT", "PATCH"):
            try:
                request_body = request.body.decode("utf-8")[:MAX_LOGGED_CONTENT]
            except UnicodeDecodeError:
                request_body = "<Could not decode body>"

        logger.info("API Request: %s %s Body: %s", request.method, path, request_body)

        response = self.get_response(request)

        response_type = response.get("Content-Type", "")
        if getattr(response, "streaming", False):
            response_content = "<Streaming content>"
        elif response_type.startswith(("application/json", "text/")):
            try:
                response_content = response.content.decode("utf-8")[:MAX_LOGGED_CONTENT]
            except UnicodeDecodeError:
                response_content = "<Could not decode content>"
        else:
            response_content = f"<Content-Type: {response_type}>"

        logger.info(
            "API Response: %s %s Status: %s Content: %s",
            request.method,
            path,
            response.status_code,
            response_content,
        )
        return response
