from mail_spool.config_loader import load_settings
from mail_spool.logger import configure_logging
from mail_spool.server import run


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(str(settings.get("log_level") or "INFO"), settings.get("log_directory"))
    run(settings)
