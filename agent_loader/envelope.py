"""
Collection+JSON style response envelope.

Every API response is a resource of the form

    {"collection": {"version": "1.0", "href": ...,
                    "items": [{"href": ..., "data": [{"name": ..., "value": ...}]}],
                    "template": {}, "error": {"code": ..., "message": ...}}}

The loader only ever reads the first data value of the first item.
"""

from typing import Any, Dict

from agent_loader.errors import ProtocolError

VERSION = "1.0"


def new_resource(href: str) -> Dict[str, Any]:
    return {
        "collection": {
            "version": VERSION,
            "href": href,
            "items": [],
            "template": {},
            "error": {},
        }
    }


def add_item(resource: Dict[str, Any], href: str, name: str, value: Any) -> Dict[str, Any]:
    resource["collection"]["items"].append({
        "href": href,
        "data": [{"name": name, "value": value}],
    })
    return resource


def set_error(resource: Dict[str, Any], code: str, message: str) -> Dict[str, Any]:
    resource["collection"]["error"] = {"code": code, "message": message}
    return resource


def error_message(body: Any) -> str:
    try:
        err = body["collection"]["error"]
        return str(err.get("message") or "")
    except (KeyError, TypeError, AttributeError):
        return ""


def first_value(body: Any) -> Any:
    """Return items[0].data[0].value, or raise ProtocolError if the shape is wrong."""
    try:
        collection = body["collection"]
        return collection["items"][0]["data"][0]["value"]
    except (KeyError, IndexError, TypeError) as e:
        message = error_message(body)
        if message:
            raise ProtocolError(f"API returned an error: {message}") from e
        raise ProtocolError(f"Unexpected response envelope: {e!r}") from e
