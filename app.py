import os
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import wraps

import jwt
from dotenv import load_dotenv
from flask import Flask, request, jsonify, url_for
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from pymongo import MongoClient, errors
from pymongo.collection import Collection
from bson.objectid import ObjectId
from pydantic import ValidationError

from vibes import (
    CheckInRequest,
    RetrievalError,
    SubmissionError,
    aggregate_vibes,
    is_valid_venue_id,
    isoformat_or_none,
    serialize_checkin,
    serialize_venue,
    utcnow,
)


def env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    try:
        return int(raw) if raw and raw.strip() else default
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring non-integer {name}={raw!r}")
        return default


# --- App setup ---
load_dotenv()
app = Flask(__name__)
app.config["RATELIMIT_HEADERS_ENABLED"] = True
app.config["RATELIMIT_ENABLED"] = env_flag("RATELIMIT_ENABLED", True)
CORS(app)
limiter = Limiter(get_remote_address, app=app)
logging.basicConfig(level=logging.INFO)

MONGODB_URI = os.environ.get("MONGODB_URI")
MONGODB_DB = os.environ.get("MONGODB_DB", "bahrainnights")

VIBE_WINDOW = timedelta(hours=env_int("VIBE_WINDOW_HOURS", 3))
TRENDING_WINDOW = timedelta(minutes=env_int("VIBE_TRENDING_WINDOW_MINUTES", 60))
TRENDING_MIN_CHECKINS = env_int("VIBE_TRENDING_MIN_CHECKINS", 3)
TRENDING_TOP_K = env_int("VIBE_TRENDING_TOP_K", 5)

MAX_QUERY_LIMIT = 100
ADMIN_LIST_LIMIT = 100


def json_response(payload, status: int = 200, cache_seconds: int | None = None, robots: str | None = "noindex"):
    headers = {
        "Content-Type": "application/json",
    }
    if cache_seconds is None:
        headers["Cache-Control"] = "no-store"
    else:
        headers["Cache-Control"] = f"public, max-age={cache_seconds}"
    if robots:
        headers["X-Robots-Tag"] = robots
    return jsonify(payload), status, headers


def parse_limit(raw, maximum: int = MAX_QUERY_LIMIT) -> int | None:
    """Parse an optional ``limit`` query value; raises ValueError when malformed."""
    if raw is None or raw == "":
        return None
    value = int(raw)
    if value < 1 or value > maximum:
        raise ValueError(f"limit must be between 1 and {maximum}")
    return value


# --- Mongo helpers ---
def ensure_index(coll: Collection, keys, name: str, **kwargs):
    info = coll.index_information()
    if name in info:
        meta = info[name]
        same_keys = meta.get("key") == list(keys)
        same_unique = bool(meta.get("unique", False)) == bool(kwargs.get("unique", False))
        if same_keys and same_unique:
            return
        try:
            coll.drop_index(name)
        except Exception as e:
            app.logger.warning(f"Drop index {name} failed: {e}")
    coll.create_index(list(keys), name=name, **kwargs)


def venue_lookup_ids(venue_id: str) -> list:
    """Candidate `_id` values for a venue id: the raw string, plus its ObjectId form."""
    ids = [venue_id]
    if ObjectId.is_valid(venue_id):
        ids.append(ObjectId(venue_id))
    return ids


# --- Mongo connection + index hygiene ---
checkins_collection = None
venues_collection = None

if MONGODB_URI:
    try:
        client = MongoClient(MONGODB_URI, serverSelectionTimeoutMS=5000)
        db = client[MONGODB_DB]
        checkins_collection = db.checkins
        venues_collection = db.venues

        ensure_index(checkins_collection, [("createdAt", -1)], name="created_desc")
        ensure_index(checkins_collection, [("venueId", 1), ("createdAt", -1)], name="venue_created_desc")
        ensure_index(venues_collection, [("slug", 1)], name="slug_asc")

        app.logger.info("Connected to MongoDB and ensured indexes.")
    except Exception as e:
        app.logger.error(f"Error connecting to MongoDB: {e}")
        checkins_collection = None
        venues_collection = None
else:
    app.logger.warning("MONGODB_URI not set; vibe check endpoints will report the store as unavailable.")


# --- Store access ---
def load_live_checkins(now: datetime) -> list[dict]:
    if checkins_collection is None:
        raise RetrievalError("Check-in store is not configured.")
    query = {"createdAt": {"$gt": now - VIBE_WINDOW}}
    try:
        return list(checkins_collection.find(query))
    except errors.PyMongoError as exc:
        raise RetrievalError(f"Failed to read check-ins: {exc}") from exc


def load_venues(venue_ids) -> dict[str, dict]:
    ids = sorted({str(v) for v in venue_ids if v})
    if not ids:
        return {}
    if venues_collection is None:
        raise RetrievalError("Venue directory is not configured.")
    lookup_ids = [lookup for v in ids for lookup in venue_lookup_ids(v)]
    try:
        docs = list(venues_collection.find({"_id": {"$in": lookup_ids}}))
    except errors.PyMongoError as exc:
        raise RetrievalError(f"Failed to read venues: {exc}") from exc
    return {str(doc.get("_id")): doc for doc in docs}


def find_venue(venue_id: str) -> dict | None:
    if venues_collection is None:
        raise RetrievalError("Venue directory is not configured.")
    try:
        return venues_collection.find_one({"_id": {"$in": venue_lookup_ids(venue_id)}})
    except errors.PyMongoError as exc:
        raise RetrievalError(f"Failed to read venue {venue_id}: {exc}") from exc


def store_checkin(data: dict, now: datetime) -> dict:
    if checkins_collection is None:
        raise SubmissionError("Check-in store is not configured.")
    doc = dict(data)
    doc["createdAt"] = now
    try:
        result = checkins_collection.insert_one(doc)
    except errors.PyMongoError as exc:
        raise SubmissionError(f"Failed to store check-in: {exc}") from exc
    doc["_id"] = result.inserted_id
    return doc


def current_vibes(now: datetime, venue_id: str | None = None, limit: int | None = None) -> list[dict]:
    checkins = load_live_checkins(now)
    venues = load_venues(doc.get("venueId") for doc in checkins)
    items = aggregate_vibes(
        checkins,
        venues,
        now=now,
        window=VIBE_WINDOW,
        trending_window=TRENDING_WINDOW,
        trending_min_checkins=TRENDING_MIN_CHECKINS,
        trending_top_k=TRENDING_TOP_K,
    )
    if venue_id:
        items = [item for item in items if item["venueId"] == venue_id]
    if limit is not None:
        items = items[:limit]
    return items


# --- Security ---
JWT_SECRET = os.environ.get("JWT_SECRET_KEY", "")


@dataclass(frozen=True)
class AdminSession:
    """Claims of a verified admin token, handed to protected handlers."""

    subject: str
    expires_at: datetime | None
    claims: dict = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: dict) -> "AdminSession":
        exp = claims.get("exp")
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc) if isinstance(exp, (int, float)) else None
        return cls(subject=str(claims.get("sub") or "admin"), expires_at=expires_at, claims=dict(claims))


def protect(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not JWT_SECRET:
            app.logger.error("JWT secret not configured; rejecting protected request.")
            return jsonify({"message": "Server misconfigured."}), 500
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1].strip()
            try:
                claims = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
            except jwt.ExpiredSignatureError:
                return jsonify({"message": "Token expired."}), 401
            except jwt.InvalidTokenError:
                return jsonify({"message": "Invalid token."}), 401
            return f(*args, session=AdminSession.from_claims(claims), **kwargs)
        return jsonify({"message": "Unauthorized."}), 401
    return decorated_function


def apply_security_headers(response):
    """Apply a minimal set of security headers on every response."""
    headers = getattr(response, "headers", None)
    if headers is None:
        return response
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("X-Frame-Options", "DENY")
    headers.setdefault("Referrer-Policy", "same-origin")
    headers.setdefault("X-XSS-Protection", "1; mode=block")
    return response


app.after_request(apply_security_headers)


@app.route("/api/health", methods=["GET"])
def health():
    """Lightweight health-check endpoint used by monitoring probes."""
    return jsonify({"status": "ok"}), 200


_ERROR_SCHEMA = {
    "type": "object",
    "properties": {
        "message": {"type": "string"},
        "errors": {"type": "array", "items": {"type": "object"}},
    },
}


def _error(description: str) -> dict:
    return {"description": description, "content": {"application/json": {"schema": _ERROR_SCHEMA}}}


OPENAPI_TEMPLATE = {
    "openapi": "3.1.0",
    "info": {
        "title": "BahrainNights Vibe Check API",
        "version": "1.0.0",
        "description": "Crowd-sourced venue check-ins and the live vibe ranking built from them.",
        "contact": {
            "name": "BahrainNights",
            "url": "https://www.bahrainnights.com",
        },
    },
    "paths": {
        "/api/health": {
            "get": {
                "summary": "Health check",
                "description": "Returns a simple status payload indicating the API is responsive.",
                "responses": {
                    "200": {
                        "description": "Service is healthy.",
                        "content": {
                            "application/json": {
                                "schema": {
                                    "type": "object",
                                    "properties": {
                                        "status": {"type": "string", "example": "ok"}
                                    },
                                }
                            }
                        },
                    }
                },
            }
        },
        "/api/vibe-check": {
            "get": {
                "summary": "Live venue vibes",
                "description": "Venues with recent check-ins, trending venues first.",
                "parameters": [
                    {"name": "limit", "in": "query", "schema": {"type": "integer", "minimum": 1, "maximum": MAX_QUERY_LIMIT}},
                    {"name": "venueId", "in": "query", "schema": {"type": "string"}},
                ],
                "responses": {
                    "200": {
                        "description": "Ranked vibes.",
                        "content": {
                            "application/json": {
                                "schema": {
                                    "type": "object",
                                    "properties": {
                                        "generatedAt": {"type": "string", "format": "date-time"},
                                        "windowHours": {"type": "number"},
                                        "venues": {
                                            "type": "array",
                                            "items": {"$ref": "#/components/schemas/VenueVibe"},
                                        },
                                    },
                                }
                            }
                        },
                    },
                    "400": _error("Malformed query parameter."),
                    "503": _error("Check-in store unavailable."),
                },
            }
        },
        "/api/vibe-check/venues": {
            "get": {
                "summary": "Venues available for check-in",
                "parameters": [
                    {"name": "category", "in": "query", "schema": {"type": "string"}},
                ],
                "responses": {
                    "200": {
                        "description": "Venue directory entries sorted by name.",
                        "content": {
                            "application/json": {
                                "schema": {
                                    "type": "object",
                                    "properties": {
                                        "venues": {
                                            "type": "array",
                                            "items": {"$ref": "#/components/schemas/Venue"},
                                        }
                                    },
                                }
                            }
                        },
                    },
                    "503": _error("Venue directory unavailable."),
                },
            }
        },
        "/api/vibe-check/checkin": {
            "post": {
                "summary": "Submit a check-in",
                "description": "Records one independent crowd report. Identical submissions are counted separately.",
                "requestBody": {
                    "required": True,
                    "content": {
                        "application/json": {
                            "schema": {"$ref": "#/components/schemas/CheckInRequest"}
                        }
                    },
                },
                "responses": {
                    "201": {
                        "description": "Check-in recorded.",
                        "content": {
                            "application/json": {
                                "schema": {
                                    "type": "object",
                                    "properties": {
                                        "message": {"type": "string"},
                                        "checkIn": {"$ref": "#/components/schemas/CheckIn"},
                                    },
                                }
                            }
                        },
                    },
                    "400": _error("Invalid check-in."),
                    "404": _error("Venue not found."),
                    "503": _error("Check-in could not be stored."),
                },
            }
        },
        "/api/admin/vibe-check/checkins": {
            "get": {
                "summary": "Raw live check-ins",
                "security": [{"bearerAuth": []}],
                "parameters": [
                    {"name": "limit", "in": "query", "schema": {"type": "integer", "minimum": 1, "maximum": ADMIN_LIST_LIMIT}},
                    {"name": "venueId", "in": "query", "schema": {"type": "string"}},
                ],
                "responses": {
                    "200": {"description": "Check-ins, newest first."},
                    "400": _error("Malformed query parameter."),
                    "401": _error("Missing or invalid token."),
                    "503": _error("Check-in store unavailable."),
                },
            }
        },
        "/api/admin/verify-token": {
            "post": {
                "summary": "Verify admin token",
                "security": [{"bearerAuth": []}],
                "responses": {
                    "200": {"description": "Token is valid."},
                    "401": _error("Missing or invalid token."),
                },
            }
        },
    },
    "components": {
        "securitySchemes": {
            "bearerAuth": {
                "type": "http",
                "scheme": "bearer",
                "bearerFormat": "JWT",
            }
        },
        "schemas": {
            "CheckInRequest": {
                "type": "object",
                "properties": {
                    "venueId": {"type": "string", "pattern": "^[A-Za-z0-9_-]{1,64}$"},
                    "crowdLevel": {"type": "integer", "minimum": 1, "maximum": 5},
                    "musicVibe": {"type": "string", "enum": ["none", "background", "dj", "live", "party"]},
                    "atmosphere": {"type": "string", "enum": ["chill", "lively", "romantic", "wild", "classy"]},
                    "waitTime": {"type": "string", "maxLength": 40},
                },
                "required": ["venueId", "crowdLevel", "musicVibe", "atmosphere"],
                "additionalProperties": False,
            },
            "CheckIn": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "venueId": {"type": "string"},
                    "crowdLevel": {"type": "integer"},
                    "musicVibe": {"type": "string"},
                    "atmosphere": {"type": "string"},
                    "waitTime": {"type": "string"},
                    "createdAt": {"type": "string", "format": "date-time"},
                },
            },
            "Venue": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "name": {"type": "string"},
                    "category": {"type": "string"},
                    "slug": {"type": "string"},
                    "image": {"type": ["string", "null"]},
                },
            },
            "VenueVibe": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "venueId": {"type": "string"},
                    "name": {"type": "string"},
                    "category": {"type": "string"},
                    "slug": {"type": "string"},
                    "image": {"type": ["string", "null"]},
                    "crowdLevel": {"type": "integer", "minimum": 1, "maximum": 5},
                    "crowdLabel": {"type": "string"},
                    "musicVibe": {"type": "string"},
                    "atmosphere": {"type": "string"},
                    "waitTime": {"type": "string"},
                    "totalCheckins": {"type": "integer", "minimum": 1},
                    "trendingScore": {"type": "integer", "minimum": 0},
                    "trending": {"type": "boolean"},
                    "lastUpdated": {"type": "string", "example": "10 min ago"},
                    "lastUpdatedAt": {"type": "string", "format": "date-time"},
                },
            },
        },
    },
}


def build_openapi_document():
    """Generate the OpenAPI document, hydrating runtime server information."""
    document = copy.deepcopy(OPENAPI_TEMPLATE)
    server_url = (request.host_url or "").rstrip("/")
    if not server_url:
        server_url = "http://localhost"
    document["servers"] = [{"url": server_url}]
    return document


@app.route("/openapi.json", methods=["GET"])
def openapi_json():
    """Expose the OpenAPI definition for API consumers."""
    return jsonify(build_openapi_document()), 200


@app.route("/docs", methods=["GET"])
def docs_page():
    """Render Swagger UI backed by the generated OpenAPI definition."""
    spec_url = url_for("openapi_json", _external=True)
    html = f"""<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\">
    <title>BahrainNights Vibe Check API</title>
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
    <link rel=\"stylesheet\" href=\"https://cdnjs.cloudflare.com/ajax/libs/swagger-ui/5.10.5/swagger-ui.min.css\" crossorigin=\"anonymous\" />
  </head>
  <body>
    <div id=\"swagger-ui\"></div>
    <noscript>
      <p>JavaScript is required to view the interactive documentation. Download the <a href=\"{spec_url}\">OpenAPI JSON</a>.</p>
    </noscript>
    <script src=\"https://cdnjs.cloudflare.com/ajax/libs/swagger-ui/5.10.5/swagger-ui-bundle.min.js\" crossorigin=\"anonymous\"></script>
    <script>
      window.onload = () => {{
        SwaggerUIBundle({{ url: "{spec_url}", dom_id: '#swagger-ui' }});
      }};
    </script>
  </body>
</html>"""
    return html, 200, {"Content-Type": "text/html; charset=utf-8"}


# --- Vibe check ---
@app.route("/api/vibe-check", methods=["GET"])
@limiter.limit("100 per minute")
def list_vibes():
    try:
        limit = parse_limit(request.args.get("limit"))
    except ValueError:
        return jsonify({"message": f"limit must be an integer between 1 and {MAX_QUERY_LIMIT}."}), 400
    venue_id = request.args.get("venueId") or None
    if venue_id is not None and not is_valid_venue_id(venue_id):
        return jsonify({"message": "Invalid venue id."}), 400
    now = utcnow()
    try:
        items = current_vibes(now, venue_id=venue_id, limit=limit)
    except RetrievalError as e:
        app.logger.error(f"[DB] {e}")
        return jsonify({"message": "Vibe data is temporarily unavailable."}), 503
    payload = {
        "generatedAt": isoformat_or_none(now),
        "windowHours": VIBE_WINDOW.total_seconds() / 3600,
        "venues": items,
    }
    return json_response(payload)


@app.route("/api/vibe-check/venues", methods=["GET"])
@limiter.limit("100 per minute")
def list_checkin_venues():
    if venues_collection is None:
        app.logger.error("[DB] Venue directory is not configured.")
        return jsonify({"message": "Venue directory is temporarily unavailable."}), 503
    query = {}
    category = (request.args.get("category") or "").strip()
    if category:
        query["category"] = category
    try:
        docs = list(venues_collection.find(query))
    except errors.PyMongoError as e:
        app.logger.error(f"[DB] Failed to read venues: {e}")
        return jsonify({"message": "Venue directory is temporarily unavailable."}), 503
    items = sorted((serialize_venue(doc) for doc in docs), key=lambda v: (v["name"].lower(), v["id"]))
    return json_response({"venues": items}, cache_seconds=300)


@app.route("/api/vibe-check/checkin", methods=["POST"])
@limiter.limit("30 per minute")
def submit_checkin():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"message": "Request body must be a JSON object."}), 400
    try:
        req = CheckInRequest(**payload)
    except ValidationError as ve:
        app.logger.warning(f"[VALIDATION] {ve}")
        return jsonify({"message": "Invalid check-in", "errors": ve.errors(include_url=False)}), 400
    try:
        venue = find_venue(req.venueId)
    except RetrievalError as e:
        app.logger.error(f"[DB] {e}")
        return jsonify({"message": "Venue directory is temporarily unavailable."}), 503
    if not venue:
        return jsonify({"message": "Venue not found."}), 404
    try:
        doc = store_checkin(req.dict(), utcnow())
    except SubmissionError as e:
        app.logger.error(f"[DB] {e}")
        return jsonify({"message": "Check-in could not be saved. Please try again."}), 503
    app.logger.info(f"Check-in recorded for venue {req.venueId} (crowd {req.crowdLevel})")
    return jsonify({"message": "Check-in recorded.", "checkIn": serialize_checkin(doc)}), 201


# --- Admin ---
@app.route("/api/admin/vibe-check/checkins", methods=["GET"])
@limiter.limit("30 per minute")
@protect
def list_admin_checkins(session: AdminSession):
    try:
        limit = parse_limit(request.args.get("limit"), maximum=ADMIN_LIST_LIMIT) or ADMIN_LIST_LIMIT
    except ValueError:
        return jsonify({"message": f"limit must be an integer between 1 and {ADMIN_LIST_LIMIT}."}), 400
    venue_id = request.args.get("venueId") or None
    if venue_id is not None and not is_valid_venue_id(venue_id):
        return jsonify({"message": "Invalid venue id."}), 400
    if checkins_collection is None:
        return jsonify({"message": "Check-in store is temporarily unavailable."}), 503
    now = utcnow()
    query = {"createdAt": {"$gt": now - VIBE_WINDOW}}
    if venue_id:
        query["venueId"] = venue_id
    try:
        docs = list(checkins_collection.find(query).sort("createdAt", -1).limit(limit))
    except errors.PyMongoError as e:
        app.logger.error(f"[DB] Admin check-in listing failed for {session.subject}: {e}")
        return jsonify({"message": "Check-in store is temporarily unavailable."}), 503
    items = [serialize_checkin(doc) for doc in docs]
    return json_response({"generatedAt": isoformat_or_none(now), "items": items})


@app.route('/api/admin/verify-token', methods=['POST'])
@limiter.limit("10 per minute")
@protect
def verify_token(session: AdminSession):
    return jsonify({
        "message": "Token is valid.",
        "subject": session.subject,
        "expiresAt": isoformat_or_none(session.expires_at),
    }), 200


if __name__ == "__main__":
    flask_env = os.environ.get("FLASK_ENV", "production").lower()
    debug = flask_env == "development" or (
        flask_env != "production"
        and os.environ.get("DEBUG", "").lower() in ("1", "true", "yes")
    )
    app.run(host="0.0.0.0", port=env_int("PORT", 5000), debug=debug)
