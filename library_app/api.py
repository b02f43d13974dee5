import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from library_app.book import Book
from library_app.catalog import Catalog
from library_app.config import settings
from library_app.database import MAX_ROW_ID, get_db_connection
from library_app.errors import (
    BookNotFound,
    BookUnavailable,
    LedgerError,
    LimitExceeded,
    NoActiveCheckout,
    StoreFailure,
    StudentNotFound,
)
from library_app.ledger import LoanLedger
from library_app.students import StudentRegistry

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# HTTP status for each ledger error kind
ERROR_STATUS = {
    BookNotFound: 404,
    StudentNotFound: 404,
    NoActiveCheckout: 404,
    LimitExceeded: 400,
    BookUnavailable: 400,
    StoreFailure: 500,
}

# Ids that cannot name a row are rejected before they reach the database
BookId = Annotated[int, Path(ge=1, le=MAX_ROW_ID)]
UserId = Annotated[int, Path(ge=1, le=MAX_ROW_ID)]


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: Optional[str] = None
    total_copies: int
    available_copies: int
    subject: Optional[str] = None
    research_area: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[str] = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: Optional[str] = None
    total_copies: int = Field(default=1, ge=0)
    available_copies: Optional[int] = Field(default=None, ge=0, description="Defaults to total_copies")
    subject: Optional[str] = None
    research_area: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None


class UpdateBookModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    total_copies: Optional[int] = Field(default=None, ge=0)
    subject: Optional[str] = None
    research_area: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None


class LoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    registration_number: str = Field(alias="registrationNumber", min_length=1)


class StudentModel(BaseModel):
    id: int
    name: str
    registration_number: Optional[str] = None


class StudentDetailModel(StudentModel):
    faculty: Optional[str] = None
    course_of_study: Optional[str] = None
    intake_batch: Optional[str] = None
    created_at: Optional[str] = None


class StudentCreateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    registration_number: str = Field(alias="registrationNumber")
    password: str = Field(min_length=6)
    faculty: Optional[str] = None
    course_of_study: Optional[str] = None
    intake_batch: Optional[str] = None


class LibrarianCreateModel(BaseModel):
    name: str
    email: str
    password: str = Field(min_length=6)


class LibrarianModel(BaseModel):
    id: int
    name: str
    email: Optional[str] = None
    role: str
    created_at: Optional[str] = None


class CheckoutModel(BaseModel):
    id: int
    user_id: int
    book_id: int
    checked_out_at: str
    returned_at: Optional[str] = None
    status: str
    student: Optional[StudentModel] = None
    book_title: Optional[str] = None


class LoanResultModel(BaseModel):
    message: str
    book: BookModel
    student: StudentModel
    checkout: CheckoutModel


class ActiveCheckoutsModel(BaseModel):
    pending_count: int
    checkouts: List[CheckoutModel]


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    active_checkouts: int


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Dependency that guards the librarian-only routes."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Dependencies ---
def get_ledger(request: Request) -> LoanLedger:
    return request.app.state.ledger


def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog


def get_registry(request: Request) -> StudentRegistry:
    return request.app.state.registry


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


def create_app(db_file: Optional[str] = None) -> FastAPI:
    """Build the API bound to one database file."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.app_name} {settings.app_version} starting ({settings.environment})")
        yield
        logger.info(f"{settings.app_name} shutting down")

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LedgerError, ledger_error_handler)

    # Catalog creates the schema (and reconciles orphans) before anything else runs
    app.state.catalog = Catalog(db_file=db_file)
    app.state.registry = StudentRegistry(db_file=db_file, initialize=False)
    app.state.ledger = LoanLedger(db_file=db_file)
    app.state.db_file = db_file

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # --- Health ---
    @app.get("/health")
    def health(request: Request):
        """Lightweight health endpoint: makes a quick database round trip."""
        db_ok = True
        try:
            conn = get_db_connection(request.app.state.db_file)
            try:
                conn.execute("SELECT 1")
            finally:
                conn.close()
        except Exception:
            logger.exception("Health check could not reach the database")
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "db": db_ok,
        }

    @app.get("/stats", response_model=StatsModel)
    def get_library_stats(catalog: Catalog = Depends(get_catalog)):
        """Copy and loan totals across the catalog."""
        return StatsModel(**catalog.get_statistics())

    # --- Loans ---
    @app.get("/books/active-checkouts", response_model=ActiveCheckoutsModel, dependencies=[Depends(get_api_key)])
    def active_checkouts(ledger: LoanLedger = Depends(get_ledger)):
        """Every outstanding loan; pending_count is the number of books still to come back."""
        pending_count, checkouts = ledger.active_checkouts()
        return {"pending_count": pending_count, "checkouts": [c.to_dict() for c in checkouts]}

    @app.post("/books/{book_id}/checkout", response_model=LoanResultModel, dependencies=[Depends(get_api_key)])
    def checkout_book(book_id: BookId, payload: LoanRequest, ledger: LoanLedger = Depends(get_ledger)):
        """Check a book out to a student."""
        return ledger.checkout(book_id, payload.registration_number).to_dict()

    @app.put("/books/{book_id}/return", response_model=LoanResultModel, dependencies=[Depends(get_api_key)])
    def return_book(book_id: BookId, payload: LoanRequest, ledger: LoanLedger = Depends(get_ledger)):
        """Take a book back from a student."""
        return ledger.return_book(book_id, payload.registration_number).to_dict()

    @app.get("/books/{book_id}/checkouts", response_model=List[CheckoutModel], dependencies=[Depends(get_api_key)])
    def book_checkouts(book_id: BookId, ledger: LoanLedger = Depends(get_ledger)):
        return [c.to_dict() for c in ledger.book_active_checkouts(book_id)]

    @app.get("/books/{book_id}/checkout-history", response_model=List[CheckoutModel],
             dependencies=[Depends(get_api_key)])
    def book_checkout_history(book_id: BookId, ledger: LoanLedger = Depends(get_ledger)):
        return [c.to_dict() for c in ledger.book_history(book_id)]

    @app.get("/students/{registration_number}/checkouts", response_model=List[CheckoutModel])
    def student_checkouts(registration_number: str, ledger: LoanLedger = Depends(get_ledger)):
        """Books the student currently holds, newest first."""
        return [c.to_dict() for c in ledger.student_active_checkouts(registration_number)]

    # --- Catalog ---
    @app.get("/books", response_model=List[BookModel])
    def get_books(
        q: Optional[str] = Query(None, description="Search title, author, ISBN or subject"),
        limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
        offset: int = Query(0, ge=0),
        catalog: Catalog = Depends(get_catalog),
    ):
        books = catalog.search_books(q) if q else catalog.list_books()
        return [b.to_dict() for b in books[offset:offset + limit]]

    @app.get("/books/{book_id}", response_model=BookModel)
    def get_book(book_id: BookId, catalog: Catalog = Depends(get_catalog)):
        book = catalog.find_book(book_id)
        if not book:
            raise HTTPException(status_code=404, detail="Book not found")
        return book.to_dict()

    @app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
    def add_book(payload: BookCreateModel, catalog: Catalog = Depends(get_catalog)):
        try:
            book = catalog.add_book(Book(**payload.model_dump()))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return book.to_dict()

    @app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
    def update_book(book_id: BookId, update: UpdateBookModel, catalog: Catalog = Depends(get_catalog)):
        try:
            book = catalog.update_book(book_id, **update.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not book:
            raise HTTPException(status_code=404, detail="Book not found")
        return book.to_dict()

    @app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
    def delete_book(book_id: BookId, catalog: Catalog = Depends(get_catalog)):
        if not catalog.remove_book(book_id):
            raise HTTPException(status_code=404, detail="Book not found")
        return {"message": "Book removed"}

    # --- Students ---
    @app.get("/students", response_model=List[StudentDetailModel], dependencies=[Depends(get_api_key)])
    def list_students(registry: StudentRegistry = Depends(get_registry)):
        return [s.to_dict() for s in registry.list_students()]

    @app.post("/students", response_model=StudentDetailModel, status_code=201, dependencies=[Depends(get_api_key)])
    def register_student(payload: StudentCreateModel, registry: StudentRegistry = Depends(get_registry)):
        try:
            student = registry.register_student(**payload.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return student.to_dict()

    @app.delete("/students/{user_id}", dependencies=[Depends(get_api_key)])
    def delete_student(user_id: UserId, registry: StudentRegistry = Depends(get_registry)):
        try:
            deleted = registry.delete_student(user_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not deleted:
            raise HTTPException(status_code=404, detail="Student not found")
        return {"message": "Student deleted successfully"}

    @app.get("/librarians", response_model=List[LibrarianModel], dependencies=[Depends(get_api_key)])
    def list_librarians(registry: StudentRegistry = Depends(get_registry)):
        return [u.to_dict() for u in registry.list_librarians()]

    @app.post("/librarians", response_model=LibrarianModel, status_code=201, dependencies=[Depends(get_api_key)])
    def register_librarian(payload: LibrarianCreateModel, registry: StudentRegistry = Depends(get_registry)):
        try:
            user = registry.register_librarian(payload.name, payload.email, payload.password)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return user.to_dict()

    @app.delete("/librarians/{user_id}", dependencies=[Depends(get_api_key)])
    def delete_librarian(user_id: UserId, registry: StudentRegistry = Depends(get_registry)):
        if not registry.delete_librarian(user_id):
            raise HTTPException(status_code=404, detail="Librarian not found")
        return {"message": "Librarian deleted successfully"}

