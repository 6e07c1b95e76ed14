"""
OrbitWatch Backend API
Near-Earth object telemetry, scored for risk, bookmarked per observer,
discussed in one shared room.
"""

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import date, datetime, timedelta
import httpx
import os
from passlib.context import CryptContext
import jwt
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from functools import lru_cache
import logging

from neo_core import (
    NormalizedAsteroid,
    RECENT_APPROACH_LIMIT,
    cap_recent_approaches,
    normalize_feed,
    normalize_record,
    InvalidRecordError,
)

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("orbitwatch")

SYNC_FAILED = "Planetary Intelligence Sync Failed"


class SyncFailure(Exception):
    """Feed synchronization failed. Rendered as {"error", "details"} at top level."""

    def __init__(self, status_code: int, details: str):
        super().__init__(details)
        self.status_code = status_code
        self.details = details

# === CONFIGURATION ===

class Settings:
    """Environment driven configuration."""

    def __init__(self):
        self.nasa_api_key = os.getenv("NASA_API_KEY")
        self.nasa_base_url = os.getenv("NASA_BASE_URL", "https://api.nasa.gov/neo/rest/v1")
        self.mongodb_url = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
        self.database_name = os.getenv("DATABASE_NAME", "orbitwatch")
        self.jwt_secret = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
        self.jwt_algorithm = "HS256"
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.cors_origins = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]

        self.session_cookie = "user"
        self.session_days = 60
        self.request_timeout = 30.0
        self.cache_ttl = 300  # seconds
        self.max_feed_days = 7
        self.message_window = 100

    @property
    def secure_cookies(self) -> bool:
        return self.environment == "production"


@lru_cache()
def get_settings() -> Settings:
    return Settings()

# === DATABASE CONNECTION ===

class Database:
    """MongoDB connection manager. One client per process."""

    client: Optional[AsyncIOMotorClient] = None

    @classmethod
    async def connect(cls):
        settings = get_settings()
        cls.client = AsyncIOMotorClient(settings.mongodb_url)
        logger.info("Database connection established.")

    @classmethod
    async def disconnect(cls):
        if cls.client:
            cls.client.close()
            cls.client = None
            logger.info("Database connection closed.")

    @classmethod
    async def ping(cls) -> bool:
        """True when the server answers a ping."""
        if not cls.client:
            return False
        try:
            await cls.client.admin.command("ping")
            return True
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    @classmethod
    def get_database(cls):
        if not cls.client:
            raise RuntimeError("Database not connected.")
        settings = get_settings()
        return cls.client[settings.database_name]


def get_db():
    """Request-scoped handle on the shared database."""
    return Database.get_database()

# === SECURITY ===

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def hash_password(password: str) -> str:
    """bcrypt hash for a new password."""
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: str) -> bool:
    """Check a password against its stored hash."""
    return pwd_context.verify(plain, hashed)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a session token. Lifetime defaults to the session length."""
    settings = get_settings()
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(days=settings.session_days)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)

def decode_access_token(token: str) -> dict:
    """Verified token claims. 401 on an expired or forged token."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session expired. Sign in again.")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid session token.")

def set_session_cookie(response: Response, email: str):
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie,
        value=create_access_token({"sub": email}),
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
        max_age=60 * 60 * 24 * settings.session_days,
    )

async def resolve_session_user(token: Optional[str], db) -> Optional[dict]:
    """User document behind a session token, or None if there is no session."""
    if not token:
        return None
    payload = decode_access_token(token)
    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token payload.")
    return await db.users.find_one({"email": email})

async def get_current_user(request: Request, db=Depends(get_db)) -> dict:
    """Signed-in user from the session cookie. 401 otherwise."""
    token = request.cookies.get(get_settings().session_cookie)
    user = await resolve_session_user(token, db)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user

# === DATA MODELS ===

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    email: EmailStr
    password: str = Field(..., min_length=8)
    photo_url: Optional[str] = None

    @field_validator('name')
    @classmethod
    def name_not_blank(cls, v):
        if not v.strip():
            raise ValueError('Name must not be blank')
        return v.strip()

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class FeedRequest(BaseModel):
    """Date window for the feed. Both ends inclusive."""
    start_date: Optional[date] = None
    end_date: Optional[date] = None

class FeedResponse(BaseModel):
    count: int
    asteroids: List[NormalizedAsteroid]

class AsteroidLookup(BaseModel):
    asteroidId: str = Field(..., min_length=1)

class AsteroidDetail(BaseModel):
    asteroid: Dict[str, Any]
    summary: Optional[NormalizedAsteroid] = None

class SaveAsteroidRequest(BaseModel):
    asteroid: NormalizedAsteroid

class MessageCreate(BaseModel):
    text: str

# === NASA NEO API CLIENT ===

class NASANeoClient:
    """Client for NASA's Near Earth Object Web Service.

    Successful responses are cached per endpoint and parameters for
    `cache_ttl` seconds; stale entries are dropped when looked up.
    Failures surface as SyncFailure.
    """

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.nasa_base_url
        self.api_key = self.settings.nasa_api_key
        self._transport = transport
        self._cache: Dict[str, Any] = {}
        self._cache_timestamps: Dict[str, datetime] = {}

    def _is_cache_valid(self, key: str) -> bool:
        if key not in self._cache_timestamps:
            return False

        age = (datetime.utcnow() - self._cache_timestamps[key]).total_seconds()
        if age >= self.settings.cache_ttl:
            self._cache.pop(key, None)
            self._cache_timestamps.pop(key, None)
            return False
        return True

    async def _get(self, endpoint: str, params: dict = None) -> dict:
        if not self.api_key:
            logger.error("NASA API key is missing")
            raise SyncFailure(500, "Configuration Error: NASA API Key is missing")

        params = dict(params or {})
        url = f"{self.base_url}/{endpoint}"

        cache_key = f"{endpoint}:{sorted(params.items())}"
        if self._is_cache_valid(cache_key):
            logger.info(f"Cache hit for {endpoint}")
            return self._cache[cache_key]

        params["api_key"] = self.api_key

        async with httpx.AsyncClient(timeout=self.settings.request_timeout, transport=self._transport) as client:
            try:
                response = await client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                logger.error(f"NASA API error: {e.response.status_code} - {e.response.text}")
                raise SyncFailure(e.response.status_code, self._upstream_message(e.response))
            except httpx.HTTPError as e:
                logger.error(f"Could not reach NASA API: {e}")
                raise SyncFailure(500, str(e) or "Upstream request failed")
            except ValueError:
                logger.error(f"NASA API returned non-JSON body for {endpoint}")
                raise SyncFailure(500, "Invalid data structure received from NASA")

        if not isinstance(data, dict):
            raise SyncFailure(500, "Invalid data structure received from NASA")

        self._cache[cache_key] = data
        self._cache_timestamps[cache_key] = datetime.utcnow()
        return data

    @staticmethod
    def _upstream_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            # api.nasa.gov gateway errors nest the message under "error"
            error = body.get("error")
            message = body.get("error_message") or (error.get("message") if isinstance(error, dict) else None)
            if message:
                return str(message)
        return f"NASA API responded with status {response.status_code}"

    async def get_feed(self, start_date: str, end_date: str) -> dict:
        """Raw feed for a date window, validated at the top level only."""
        data = await self._get("feed", {"start_date": start_date, "end_date": end_date})
        if not isinstance(data.get("near_earth_objects"), dict):
            logger.error(f"Invalid feed payload for {start_date}..{end_date}")
            raise SyncFailure(500, "Invalid data structure received from NASA")
        return data

    async def get_neo_lookup(self, neo_id: str) -> dict:
        """Full record for one object, approach history included."""
        data = await self._get(f"neo/{neo_id}")
        if not isinstance(data.get("close_approach_data"), list):
            raise SyncFailure(500, "Invalid NASA NEO response")
        return data


@lru_cache()
def get_nasa_client() -> NASANeoClient:
    """Process-wide client, so the response cache is shared."""
    return NASANeoClient(get_settings())

# === COMMUNITY CHAT ===

class ChatHub:
    """Fan-out of chat messages to every connected socket."""

    def __init__(self):
        self.connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.connections.append(websocket)
        logger.info(f"Chat client connected ({len(self.connections)} online)")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.connections:
            self.connections.remove(websocket)
            logger.info(f"Chat client disconnected ({len(self.connections)} online)")

    async def broadcast(self, payload: dict):
        dead = []
        for connection in list(self.connections):
            try:
                await connection.send_json(payload)
            except Exception as e:
                logger.warning(f"Dropping chat client after failed send: {e}")
                dead.append(connection)
        for connection in dead:
            self.disconnect(connection)


chat_hub = ChatHub()

def serialize_message(doc: dict) -> dict:
    timestamp = doc.get("timestamp")
    return {
        "id": str(doc.get("_id")) if doc.get("_id") is not None else None,
        "sender": doc.get("sender"),
        "text": doc.get("text"),
        "email": doc.get("email"),
        "avatar": doc.get("avatar") or "",
        "timestamp": timestamp.isoformat() if isinstance(timestamp, datetime) else timestamp,
    }

async def store_message(db, user: dict, text: str) -> dict:
    """Persist a chat message from `user` and return its wire form."""
    doc = {
        "sender": user.get("name") or user["email"],
        "text": text,
        "email": user["email"],
        "avatar": user.get("photo_url") or "",
        "timestamp": datetime.utcnow(),
    }
    result = await db.messages.insert_one(doc)
    doc["_id"] = result.inserted_id
    return serialize_message(doc)

# === FASTAPI APPLICATION ===

app = FastAPI(
    title="OrbitWatch API",
    description="Near-Earth object telemetry with risk scoring, bookmarks and community chat",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(SyncFailure)
async def sync_failure_handler(request: Request, exc: SyncFailure):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": SYNC_FAILED, "details": exc.details},
    )

# === LIFECYCLE EVENTS ===

@app.on_event("startup")
async def startup_event():
    logger.info("OrbitWatch backend initializing...")
    await Database.connect()

    db = Database.get_database()
    await db.users.create_index("email", unique=True)
    await db.messages.create_index("timestamp")

    logger.info("OrbitWatch backend ready.")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("OrbitWatch backend shutting down...")
    await Database.disconnect()

# === HEALTH CHECK ===

@app.get("/api/health", tags=["System"])
async def health_check():
    database_up = await Database.ping()
    return {
        "status": "operational" if database_up else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "database": "up" if database_up else "down",
    }

# === AUTHENTICATION ENDPOINTS ===

@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED, tags=["Authentication"])
async def register_user(user: UserCreate, response: Response, db=Depends(get_db)):
    """Create an account and start a session."""
    existing = await db.users.find_one({"email": user.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered.")

    user_doc = {
        "name": user.name,
        "email": user.email,
        "photo_url": user.photo_url or "",
        "password_hash": hash_password(user.password),
        "joining_date": datetime.utcnow(),
        "saved_asteroids": [],
    }
    await db.users.insert_one(user_doc)
    set_session_cookie(response, user.email)

    logger.info(f"New observer registered: {user.email}")
    return {"email": user.email, "name": user.name}

@app.post("/api/login", tags=["Authentication"])
async def login_user(credentials: UserLogin, response: Response, db=Depends(get_db)):
    """Check credentials and start a session."""
    user = await db.users.find_one({"email": credentials.email})
    if not user or not verify_password(credentials.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    set_session_cookie(response, user["email"])
    logger.info(f"Observer signed in: {user['email']}")
    return {"status": 200, "email": user["email"]}

@app.post("/api/logout", tags=["Authentication"])
async def logout_user(response: Response):
    """End the session by clearing the cookie."""
    response.delete_cookie(get_settings().session_cookie, path="/")
    return {"message": "Logged out successfully"}

@app.post("/api/check-login", tags=["Authentication"])
async def check_login(current_user: dict = Depends(get_current_user)):
    return {"email": current_user["email"]}

# === NEO DATA ENDPOINTS ===

@app.post("/api/asteroid-data", response_model=FeedResponse, tags=["Near-Earth Objects"])
async def get_asteroid_data(
    window: Optional[FeedRequest] = None,
    nasa_client: NASANeoClient = Depends(get_nasa_client),
):
    """Scored Earth approaches for a date window.

    Defaults to today through the next 7 days; the window cannot exceed
    7 days.
    """
    settings = get_settings()
    window = window or FeedRequest()
    start = window.start_date or datetime.utcnow().date()
    end = window.end_date or start + timedelta(days=settings.max_feed_days)

    if end < start:
        raise HTTPException(status_code=400, detail="end_date must not precede start_date.")
    if (end - start).days > settings.max_feed_days:
        raise HTTPException(
            status_code=400,
            detail=f"Date range cannot exceed {settings.max_feed_days} days."
        )

    logger.info(f"Fetching NEO data for range: {start} to {end}")
    data = await nasa_client.get_feed(start.isoformat(), end.isoformat())
    asteroids = normalize_feed(data["near_earth_objects"])

    logger.info(f"Feed normalized: {len(asteroids)} objects for {start} to {end}")
    return FeedResponse(count=len(asteroids), asteroids=asteroids)

@app.post("/api/asteroid", response_model=AsteroidDetail, tags=["Near-Earth Objects"])
async def get_asteroid_detail(
    lookup: AsteroidLookup,
    nasa_client: NASANeoClient = Depends(get_nasa_client),
):
    """Full payload for one object with its most recent approaches.

    The summary is scored from the first Earth approach in that window;
    it is null when the window holds no Earth approach or the payload is
    unusable for scoring.
    """
    data = await nasa_client.get_neo_lookup(lookup.asteroidId)
    detail = cap_recent_approaches(data, RECENT_APPROACH_LIMIT)

    try:
        summary = normalize_record(detail)
    except InvalidRecordError as e:
        logger.warning(f"Detail for {lookup.asteroidId} cannot be scored: {e}")
        summary = None

    return AsteroidDetail(asteroid=detail, summary=summary)

# === SAVED ASTEROIDS ===

@app.post("/api/save-asteroid", tags=["Saved Asteroids"])
async def save_asteroid(
    request: SaveAsteroidRequest,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """Bookmark a scored asteroid. Saving the same id twice is a no-op."""
    asteroid = request.asteroid
    email = current_user["email"]

    if any(saved.get("id") == asteroid.id for saved in current_user.get("saved_asteroids") or []):
        return {"message": "Asteroid is already in your catalog", "alreadySaved": True}

    entry = asteroid.model_dump(mode="json", by_alias=True)
    entry["savedAt"] = datetime.utcnow().isoformat()

    # conditional push keeps concurrent saves of one id from duplicating
    result = await db.users.update_one(
        {"email": email, "saved_asteroids.id": {"$ne": asteroid.id}},
        {"$push": {"saved_asteroids": entry}},
    )
    if result.modified_count == 0:
        return {"message": "Asteroid is already in your catalog", "alreadySaved": True}

    logger.info(f"Asteroid {asteroid.id} saved for {email}")
    return {"message": "Celestial object successfully saved to catalog", "asteroidId": asteroid.id}

@app.post("/api/remove-asteroid", tags=["Saved Asteroids"])
async def remove_asteroid(
    lookup: AsteroidLookup,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """Drop a bookmark. Removing an id that is not saved is a no-op."""
    await db.users.update_one(
        {"email": current_user["email"]},
        {"$pull": {"saved_asteroids": {"id": lookup.asteroidId}}},
    )
    logger.info(f"Asteroid {lookup.asteroidId} removed for {current_user['email']}")
    return {"message": "Asteroid removed from catalog", "asteroidId": lookup.asteroidId}

@app.post("/api/get-saved-asteroids", tags=["Saved Asteroids"])
async def get_saved_asteroids(current_user: dict = Depends(get_current_user)):
    """Bookmarks of the signed-in user, in save order."""
    return {"savedAsteroids": current_user.get("saved_asteroids") or []}

@app.get("/api/user-profile", tags=["Saved Asteroids"])
async def get_user_profile(current_user: dict = Depends(get_current_user)):
    """Profile card for the signed-in user."""
    joining_date = current_user.get("joining_date")
    return {
        "name": current_user.get("name"),
        "email": current_user["email"],
        "photo_url": current_user.get("photo_url") or "",
        "savedCount": len(current_user.get("saved_asteroids") or []),
        "joiningDate": joining_date.isoformat() if isinstance(joining_date, datetime) else joining_date,
    }

# === COMMUNITY MESSAGES ===

@app.get("/api/messages", tags=["Community"])
async def get_messages(db=Depends(get_db)):
    """Latest messages, oldest first. Polling fallback for the socket."""
    window = get_settings().message_window
    docs = await db.messages.find().sort("timestamp", -1).limit(window).to_list(length=window)
    return {"messages": [serialize_message(doc) for doc in reversed(docs)]}

@app.post("/api/messages", tags=["Community"])
async def post_message(
    message: MessageCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """Store a message and push it to every connected socket."""
    text = message.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Invalid text")

    stored = await store_message(db, current_user, text)
    await chat_hub.broadcast({"event": "receive-message", "message": stored})
    return {"message": stored}

@app.websocket("/api/socket")
async def chat_socket(websocket: WebSocket, db=Depends(get_db)):
    """Live chat. Anyone may listen, only signed-in users may post."""
    try:
        user = await resolve_session_user(websocket.cookies.get(get_settings().session_cookie), db)
    except HTTPException:
        user = None

    await chat_hub.connect(websocket)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (ValueError, KeyError):
                # KeyError: binary frame where a text frame was expected
                await websocket.send_json({"event": "error", "detail": "Malformed JSON"})
                continue
            if not isinstance(data, dict) or data.get("event") != "send-message":
                await websocket.send_json({"event": "error", "detail": "Unsupported event"})
                continue
            if not user:
                await websocket.send_json({"event": "error", "detail": "Unauthorized"})
                continue

            text = str(data.get("text") or "").strip()
            if not text:
                await websocket.send_json({"event": "error", "detail": "Invalid text"})
                continue

            stored = await store_message(db, user, text)
            await chat_hub.broadcast({"event": "receive-message", "message": stored})
    except WebSocketDisconnect:
        pass
    finally:
        chat_hub.disconnect(websocket)

# === ROOT ENDPOINT ===

@app.get("/", tags=["System"])
async def root():
    return {
        "service": "OrbitWatch Backend API",
        "version": "1.0.0",
        "status": "operational",
        "documentation": "/api/docs",
        "health": "/api/health"
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
