from .api_client import COW_API_BASE_URLS, CowApiClient, parse_order_uid, parse_quote_response

__all__ = [
    "COW_API_BASE_URLS",
    "CowApiClient",
    "parse_order_uid",
    "parse_quote_response",
]
