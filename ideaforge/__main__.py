import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "ideaforge.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "0").lower() in {"1", "true", "yes", "on"},
    )


if __name__ == "__main__":
    main()
