from typing import Any, Dict, Optional
from flask import jsonify

def ok(data: Any = None, meta: Optional[Dict[str, Any]] = None, status: int = 200):
    return jsonify({"ok": True, "data": data, "meta": meta or {}}), status

def no_store(resp):
    resp.headers["Cache-Control"] = "no-store, max-age=0"
    return resp
