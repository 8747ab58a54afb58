# /mya_recovery/utils/request_utils.py
from fastapi import Request

def get_remote_address(request: Request) -> str:
    """
    Returns the client's IP address as seen by the server. Proxy headers are
    resolved by uvicorn/gunicorn (forwarded_allow_ips), never read here.
    """
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"
