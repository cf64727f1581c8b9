from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
import logging

# Load environment variables from .env file
load_dotenv()

from app.api import auth, users, workspace, shares, health, metrics
from app.config import CORS_ORIGINS
from app.database import engine
from app.models.models import Base

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# Create database tables
Base.metadata.create_all(bind=engine)


app = FastAPI(
    title="Workspace Sync API",
    description="End-to-end encrypted workspace sync with versioned storage and table sharing",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api")
app.include_router(metrics.router, prefix="/api")
app.include_router(auth.router, prefix="/api")
app.include_router(users.router, prefix="/api")
app.include_router(workspace.router, prefix="/api")
app.include_router(shares.router, prefix="/api")

@app.get("/")
async def root():
    return {"message": "Welcome to Workspace Sync API"}
