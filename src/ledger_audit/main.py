import logging

from fastapi import FastAPI

from ledger_audit.config import settings
from ledger_audit.routes import router

app = FastAPI(title="Ledger Audit", version="0.1.0")
app.include_router(router)


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.DEBUG if settings.ledger_audit_env == "development" else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "ledger_audit.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ledger_audit_env == "development",
    )


if __name__ == "__main__":
    run()
