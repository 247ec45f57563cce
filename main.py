import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

import auth_utils
import config
import crud
import models  # ensure models are imported so tables are registered
from schemas import BookCreate, BookOut, BookUpdate, BookStats
from admin import router as admin_router
from auth import router as auth_router
from book_requests import router as book_requests_router
from borrows import router as borrows_router
from connections import ConnectionRegistry
from database import get_db, engine, Base, SessionLocal
from errors import LibraryError
from notifications import router as notifications_router, ws_router
from scheduler import Scheduler

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("library")


def seed_admin():
    # Create a default admin user if none exists
    db = SessionLocal()
    try:
        if db.query(models.User).filter(models.User.role == models.UserRole.ADMIN.value).first():
            return
        admin_user = models.User(
            email=config.DEFAULT_ADMIN_EMAIL,
            hashed_password=auth_utils.get_password_hash(config.DEFAULT_ADMIN_PASSWORD),
            first_name="Admin",
            last_name="User",
            role=models.UserRole.ADMIN.value,
            created_at=datetime.utcnow(),
        )
        db.add(admin_user)
        db.commit()
        logger.info("Created default admin user with email: %s", config.DEFAULT_ADMIN_EMAIL)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    seed_admin()
    if config.SCHEDULER_ENABLED:
        app.state.scheduler.start()
    try:
        yield
    finally:
        await app.state.scheduler.stop()


app = FastAPI(title="BookHive Library API", lifespan=lifespan)

# shared with the notification fan-out and the sweeps
app.state.connections = ConnectionRegistry()
app.state.scheduler = Scheduler(registry=app.state.connections)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600
)


# Add middleware to log all requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.debug("Incoming request: %s %s", request.method, request.url)
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = {"detail": exc.message}
    if not config.is_production():
        body["error"] = exc.kind
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = {"detail": "Internal server error"}
    if not config.is_production():
        body["error"] = str(exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


app.include_router(auth_router)
app.include_router(admin_router)
app.include_router(borrows_router)
app.include_router(book_requests_router)
app.include_router(notifications_router)
app.include_router(ws_router)


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Basic health check endpoint. Returns DB connectivity and basic counts."""
    try:
        db.execute(text("SELECT 1"))
        total = db.query(models.Book).count()
        users = db.query(models.User).count()
    except Exception as e:
        logger.warning("Health check failed: %s", e)
        return {"status": "error", "database": "disconnected"}
    return {
        "status": "ok",
        "database": "connected",
        "total_books": total,
        "total_users": users,
        "live_connections": len(app.state.connections),
    }


@app.get("/books", response_model=List[BookOut], tags=["Books"])
def list_books(
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    category: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Retrieve books with pagination.
    - **skip**: Number of records to skip (for pagination)
    - **limit**: Maximum number of records to return (for pagination)
    - **search**: Match against title, author, ISBN or barcode
    """
    return crud.get_books(db, skip=skip, limit=limit, search=search, category=category)


@app.get("/books/stats", response_model=BookStats, tags=["Books"])
def books_inventory_stats(db: Session = Depends(get_db)):
    """Return copy counts for the dashboard."""
    return crud.books_stats(db)


@app.get("/books/{book_id}", response_model=BookOut, tags=["Books"])
def retrieve_book(book_id: int, db: Session = Depends(get_db)):
    return crud.get_book_by_id(book_id, db)


@app.post("/books", response_model=BookOut, status_code=status.HTTP_201_CREATED, tags=["Books"])
def create_book(book: BookCreate, db: Session = Depends(get_db), _staff: models.User = Depends(auth_utils.get_librarian_user)):
    return crud.add_book(book, db)


@app.put("/books/{book_id}", response_model=BookOut, tags=["Books"])
def modify_book(book_id: int, book: BookUpdate, db: Session = Depends(get_db), _staff: models.User = Depends(auth_utils.get_librarian_user)):
    return crud.update_book(book_id, book, db)


@app.delete("/books/{book_id}", tags=["Books"])
def remove_book(book_id: int, db: Session = Depends(get_db), _admin: models.User = Depends(auth_utils.get_admin_user)):
    crud.delete_book(book_id, db)
    return {"message": "Book deleted successfully"}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=config.PORT,
        reload=not config.is_production(),
    )
