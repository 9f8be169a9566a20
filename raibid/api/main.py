from dotenv import load_dotenv
from fastapi import FastAPI

from raibid import __version__
from raibid.api.middleware import AuthMiddleware
from raibid.api.routes import health, status

load_dotenv()
app = FastAPI(title="raibid", version=__version__)
app.add_middleware(AuthMiddleware)

app.include_router(health.router)

app.include_router(status.router)
