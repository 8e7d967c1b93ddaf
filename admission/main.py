import uvicorn

from admission.core.app_factory import create_app

app = create_app()


def run() -> None:
    """Serve the app with uvicorn (``admission-api`` console script)."""
    uvicorn.run("admission.main:app", host="0.0.0.0", port=8000)
