from __future__ import annotations

import uvicorn

from longform_tts.config import get_settings


def main() -> None:
    s = get_settings()
    uvicorn.run(
        "longform_tts.web.app:create_app",
        factory=True,
        host=str(s.host),
        port=int(s.port),
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
