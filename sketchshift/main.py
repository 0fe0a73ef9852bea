from fastapi import FastAPI

from sketchshift.config import APP_NAME, configure_logging
from sketchshift.dependencies import get_supervisor
from sketchshift.routes import router

configure_logging()

app = FastAPI(
    title=APP_NAME,
    version="1.0.0"
)

# ---------------------------
# Routes
# ---------------------------
app.include_router(router)


@app.on_event("shutdown")
def _shutdown():
    get_supervisor().shutdown(wait=False)


# ---------------------------
# Health check
# ---------------------------
@app.get("/", tags=["health"])
def health():
    return {
        "status": "ok",
        "service": APP_NAME
    }
