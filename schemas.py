"""
Database Schemas for the Video Rentals API

MongoDB collections are described below using Pydantic models:
- customers: people who rent movies
- genres: movie categories
- movies: catalog titles, embedding a genre snapshot
- users: staff accounts (admin flag) used for authentication
- rentals: checkouts, embedding customer and movie snapshots

Snapshots are copies taken when the parent document is written and keep the
source's ObjectId under "_id". They are never refreshed from the source
entity afterwards.

The *In models are the request bodies checked before a route runs.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

PHONE_PATTERN = r"^\d{5,50}$"


class _Snapshot(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True, frozen=True)

    id: ObjectId = Field(..., alias="_id")

    @classmethod
    def of(cls, document: Dict[str, Any]):
        keys = ("_id", *(name for name in cls.model_fields if name != "id"))
        return cls.model_validate({k: document[k] for k in keys if k in document})

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class GenreSnapshot(_Snapshot):
    name: str


class CustomerSnapshot(_Snapshot):
    name: str
    phone: str
    isGold: bool = False


class MovieSnapshot(_Snapshot):
    title: str
    dailyRentalRate: float


# Stored documents

class Customer(BaseModel):
    name: str = Field(..., min_length=3, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    isGold: bool = Field(False)


class Genre(BaseModel):
    name: str = Field(..., min_length=3, max_length=50)


class Movie(BaseModel):
    title: str = Field(..., min_length=5, max_length=255)
    genre: GenreSnapshot
    numberInStock: int = Field(..., ge=0, le=255)
    dailyRentalRate: float = Field(..., ge=0, le=255)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=5, max_length=1024, description="BCrypt hash of password")
    isAdmin: bool = Field(False)


class Rental(BaseModel):
    customer: CustomerSnapshot
    movie: MovieSnapshot
    dateOut: datetime
    dateReturned: Optional[datetime] = None
    rentalFee: Optional[float] = Field(None, ge=0)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# Request bodies

class _Body(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class CustomerIn(_Body):
    name: str = Field(..., min_length=3, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    isGold: bool = False


class GenreIn(_Body):
    name: str = Field(..., min_length=3, max_length=50)


class MovieIn(_Body):
    title: str = Field(..., min_length=5, max_length=255)
    genreId: str = Field(..., min_length=1)
    numberInStock: int = Field(..., ge=0, le=255)
    dailyRentalRate: float = Field(..., ge=0, le=255)


class UserIn(_Body):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=5, max_length=255)


class AuthIn(_Body):
    email: EmailStr
    password: str = Field(..., min_length=5, max_length=255)


class RentalIn(_Body):
    customerId: str = Field(..., min_length=1)
    movieId: str = Field(..., min_length=1)
