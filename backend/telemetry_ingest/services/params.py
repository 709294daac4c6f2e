"""
Request parameter sources

The parsers only need two questions answered about a request: does a key
exist, and what is its raw string value.
"""
from typing import Dict, Mapping, Optional, Protocol

from starlette.requests import Request

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class ParamSource(Protocol):
    body: bytes
    
    def exists(self, key: str) -> bool:
        ...
    
    def val(self, key: str) -> Optional[str]:
        ...


class DictParams:
    """Parameters held in a plain mapping, plus an optional raw body"""
    
    def __init__(self, params: Optional[Mapping[str, str]] = None, body: bytes = b""):
        self.params: Dict[str, str] = dict(params or {})
        self.body = body
    
    def exists(self, key: str) -> bool:
        return key in self.params
    
    def val(self, key: str) -> Optional[str]:
        return self.params.get(key)


class RequestParams(DictParams):
    """
    GET and POST parameters of an HTTP request merged into one source
    Form fields override query string fields of the same name
    """
    
    @classmethod
    async def from_request(cls, request: Request) -> "RequestParams":
        params: Dict[str, str] = dict(request.query_params)
        body = b""
        if request.method == "POST":
            body = await request.body()
        
        # a cb body is compressed bytes whatever content type the device sends
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(FORM_CONTENT_TYPES) and "cb" not in params:
            form = await request.form()
            for key, value in form.items():
                if isinstance(value, str):
                    params[key] = value
        
        return cls(params, body)
