from app import build_engine, make_app
from config import get_settings
from observability import setup_logging
# Entrypoint
if __name__ == "__main__":
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    eng = build_engine(settings)
    app = make_app(eng, settings)
    # Run Flask
    app.run(host=settings.host, port=settings.port, debug=False)
