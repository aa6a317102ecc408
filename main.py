import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

import rentals as workflow
from auth import (
    Identity,
    get_current_identity,
    hash_password,
    issue_token,
    require_admin,
    verify_password,
)
from config import Settings, configure_logging
from database import DuplicateKey, RecordStore, open_store
from errors import NotFound, ValidationError, register_error_handlers
from schemas import (
    AuthIn,
    Customer as CustomerSchema,
    CustomerIn,
    Genre as GenreSchema,
    GenreIn,
    GenreSnapshot,
    Movie as MovieSchema,
    MovieIn,
    RentalIn,
    User as UserSchema,
    UserIn,
)

# Helpers

def get_store(request: Request) -> RecordStore:
    return request.app.state.store


def to_obj_id(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise NotFound("Invalid ID.")
    return ObjectId(id_str)


def sanitize(doc: Any) -> Any:
    if isinstance(doc, list):
        return [sanitize(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if not isinstance(doc, dict):
        return doc
    d = {}
    for key, value in doc.items():
        if key == "password":
            continue
        d[key] = sanitize(value)
    return d


def find_or_404(store: RecordStore, collection: str, id_str: str, what: str) -> Dict:
    doc = store.find_one(collection, {"_id": to_obj_id(id_str)})
    if not doc:
        raise NotFound(f"The {what} with the given ID was not found.")
    return doc


def genre_snapshot(store: RecordStore, genre_id: str) -> GenreSnapshot:
    genre = None
    if ObjectId.is_valid(genre_id):
        genre = store.find_one("genres", {"_id": ObjectId(genre_id)})
    if not genre:
        raise ValidationError("Invalid genre.")
    return GenreSnapshot.of(genre)


# Genres

genres = APIRouter(prefix="/api/genres", tags=["genres"])


@genres.get("")
def list_genres(store: RecordStore = Depends(get_store)):
    return sanitize(store.find("genres", sort=[("name", 1)]))


@genres.get("/{genre_id}")
def get_genre(genre_id: str, store: RecordStore = Depends(get_store)):
    return sanitize(find_or_404(store, "genres", genre_id, "genre"))


@genres.post("")
def create_genre(payload: GenreIn, admin: Identity = Depends(require_admin), store: RecordStore = Depends(get_store)):
    genre = GenreSchema(name=payload.name).model_dump()
    return sanitize(store.insert("genres", genre))


@genres.put("/{genre_id}")
def update_genre(genre_id: str, payload: GenreIn, admin: Identity = Depends(require_admin),
                 store: RecordStore = Depends(get_store)):
    genre = store.update("genres", {"_id": to_obj_id(genre_id)}, {"$set": {"name": payload.name}})
    if not genre:
        raise NotFound("The genre with the given ID was not found.")
    return sanitize(genre)


@genres.delete("/{genre_id}")
def delete_genre(genre_id: str, admin: Identity = Depends(require_admin), store: RecordStore = Depends(get_store)):
    genre = store.delete("genres", {"_id": to_obj_id(genre_id)})
    if not genre:
        raise NotFound("The genre with the given ID was not found.")
    return sanitize(genre)


# Customers

customers = APIRouter(prefix="/api/customers", tags=["customers"])


@customers.get("")
def list_customers(admin: Identity = Depends(require_admin), store: RecordStore = Depends(get_store)):
    return sanitize(store.find("customers", sort=[("name", 1)]))


@customers.get("/{customer_id}")
def get_customer(customer_id: str, store: RecordStore = Depends(get_store)):
    return sanitize(find_or_404(store, "customers", customer_id, "customer"))


@customers.post("")
def create_customer(payload: CustomerIn, admin: Identity = Depends(require_admin),
                    store: RecordStore = Depends(get_store)):
    customer = CustomerSchema(**payload.model_dump()).model_dump()
    return sanitize(store.insert("customers", customer))


@customers.put("/{customer_id}")
def update_customer(customer_id: str, payload: CustomerIn, admin: Identity = Depends(require_admin),
                    store: RecordStore = Depends(get_store)):
    fields = CustomerSchema(**payload.model_dump()).model_dump()
    customer = store.update("customers", {"_id": to_obj_id(customer_id)}, {"$set": fields})
    if not customer:
        raise NotFound("The customer with the given ID was not found.")
    return sanitize(customer)


@customers.delete("/{customer_id}")
def delete_customer(customer_id: str, admin: Identity = Depends(require_admin),
                    store: RecordStore = Depends(get_store)):
    customer = store.delete("customers", {"_id": to_obj_id(customer_id)})
    if not customer:
        raise NotFound("The customer with the given ID was not found.")
    return sanitize(customer)


# Movies

movies = APIRouter(prefix="/api/movies", tags=["movies"])


@movies.get("")
def list_movies(store: RecordStore = Depends(get_store)):
    return sanitize(store.find("movies", sort=[("title", 1)]))


@movies.get("/{movie_id}")
def get_movie(movie_id: str, store: RecordStore = Depends(get_store)):
    return sanitize(find_or_404(store, "movies", movie_id, "movie"))


@movies.post("")
def create_movie(payload: MovieIn, admin: Identity = Depends(require_admin), store: RecordStore = Depends(get_store)):
    movie = MovieSchema(
        title=payload.title,
        genre=genre_snapshot(store, payload.genreId),
        numberInStock=payload.numberInStock,
        dailyRentalRate=payload.dailyRentalRate,
    ).to_document()
    return sanitize(store.insert("movies", movie))


@movies.put("/{movie_id}")
def update_movie(movie_id: str, payload: MovieIn, admin: Identity = Depends(require_admin),
                 store: RecordStore = Depends(get_store)):
    movie_oid = to_obj_id(movie_id)
    fields = MovieSchema(
        title=payload.title,
        genre=genre_snapshot(store, payload.genreId),
        numberInStock=payload.numberInStock,
        dailyRentalRate=payload.dailyRentalRate,
    ).to_document()
    movie = store.update("movies", {"_id": movie_oid}, {"$set": fields})
    if not movie:
        raise NotFound("The movie with the given ID was not found.")
    return sanitize(movie)


@movies.delete("/{movie_id}")
def delete_movie(movie_id: str, admin: Identity = Depends(require_admin), store: RecordStore = Depends(get_store)):
    movie = store.delete("movies", {"_id": to_obj_id(movie_id)})
    if not movie:
        raise NotFound("The movie with the given ID was not found.")
    return sanitize(movie)


# Users & auth

users = APIRouter(prefix="/api/users", tags=["users"])


@users.get("/me")
def me(identity: Identity = Depends(get_current_identity), store: RecordStore = Depends(get_store)):
    return sanitize(find_or_404(store, "users", identity.subject_id, "user"))


@users.post("")
def register(payload: UserIn, request: Request, response: Response, store: RecordStore = Depends(get_store)):
    if store.find_one("users", {"email": payload.email}):
        raise ValidationError("User already registered.")
    user_doc = UserSchema(
        name=payload.name,
        email=payload.email,
        password=hash_password(payload.password),
    ).model_dump()
    try:
        user_doc = store.insert("users", user_doc)
    except DuplicateKey:
        raise ValidationError("User already registered.")
    token = issue_token(request.app.state.settings, str(user_doc["_id"]), user_doc["isAdmin"])
    response.headers["x-auth-token"] = token
    return sanitize(user_doc)


auth = APIRouter(prefix="/api/auth", tags=["auth"])


@auth.post("", response_class=PlainTextResponse)
def login(payload: AuthIn, request: Request, store: RecordStore = Depends(get_store)):
    user = store.find_one("users", {"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password", "")):
        raise ValidationError("Invalid email or password.")
    token = issue_token(request.app.state.settings, str(user["_id"]), user.get("isAdmin", False))
    return token


# Rentals

rentals = APIRouter(prefix="/api/rentals", tags=["rentals"])


@rentals.get("")
def list_rentals(identity: Identity = Depends(get_current_identity), store: RecordStore = Depends(get_store)):
    return sanitize(store.find("rentals", sort=[("dateOut", -1)]))


@rentals.get("/{rental_id}")
def get_rental(rental_id: str, identity: Identity = Depends(get_current_identity),
               store: RecordStore = Depends(get_store)):
    return sanitize(find_or_404(store, "rentals", rental_id, "rental"))


@rentals.post("")
def create_rental(payload: RentalIn, identity: Identity = Depends(get_current_identity),
                  store: RecordStore = Depends(get_store)):
    try:
        rental = workflow.checkout(store, payload.customerId, payload.movieId)
    except NotFound as exc:
        # A missing customer or movie is a bad request body here, not a missing resource
        raise ValidationError(exc.message) from exc
    return sanitize(rental)


@rentals.post("/{rental_id}/return")
def return_rental(rental_id: str, identity: Identity = Depends(get_current_identity),
                  store: RecordStore = Depends(get_store)):
    return sanitize(workflow.return_rental(store, to_obj_id(rental_id)))


# Utility endpoints

utility = APIRouter(tags=["utility"])


@utility.get("/")
def root():
    return {"message": "Video Rentals API running"}


@utility.get("/test")
def test_database(request: Request, store: RecordStore = Depends(get_store)):
    try:
        collections = store.collection_names()
        return {"backend": "ok", "database": "ok", "collections": collections}
    except Exception as e:
        request.app.state.logger.warning("Store health check failed: %s", e)
        return {"backend": "ok", "database": "error"}


def create_app(settings: Optional[Settings] = None, store: Optional[RecordStore] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logger = configure_logging(settings)
    store = store or open_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Video Rentals API...")
        store.setup()
        yield
        logger.info("Shutting down Video Rentals API...")
        store.close()

    app = FastAPI(title="Video Rentals API", lifespan=lifespan)
    app.state.settings = settings
    app.state.logger = logger
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-auth-token"],
    )
    register_error_handlers(app)

    for router in (utility, genres, customers, movies, users, auth, rentals):
        app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
