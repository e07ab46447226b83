import logging
import os
from logging.handlers import RotatingFileHandler


def setup_logging(app):
    """Configura logging estructurado para la aplicacion"""

    log_dir = app.config.get('LOG_DIR') or os.path.join(os.path.dirname(app.root_path), 'logs')
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # General application log
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.INFO)

    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'errors.log'),
        maxBytes=10485760,
        backupCount=10
    )
    error_handler.setFormatter(formatter)
    error_handler.setLevel(logging.ERROR)

    # Financial audit trail: commissions and payouts
    commissions_handler = RotatingFileHandler(
        os.path.join(log_dir, 'commissions.log'),
        maxBytes=10485760,
        backupCount=20  # longer retention for audits
    )
    commissions_handler.setFormatter(formatter)
    commissions_handler.setLevel(logging.INFO)

    dropshipping_handler = RotatingFileHandler(
        os.path.join(log_dir, 'dropshipping.log'),
        maxBytes=10485760,
        backupCount=5
    )
    dropshipping_handler.setFormatter(formatter)
    dropshipping_handler.setLevel(logging.INFO)

    app.logger.addHandler(file_handler)
    app.logger.addHandler(error_handler)
    app.logger.setLevel(logging.INFO)

    commissions_logger = logging.getLogger('commissions')
    dropshipping_logger = logging.getLogger('dropshipping')
    # one set of handlers per process, even when several apps are created
    for named_logger in (commissions_logger, dropshipping_logger):
        for handler in list(named_logger.handlers):
            named_logger.removeHandler(handler)
            handler.close()

    commissions_logger.addHandler(commissions_handler)
    commissions_logger.addHandler(error_handler)
    commissions_logger.setLevel(logging.INFO)
    commissions_logger.propagate = False

    dropshipping_logger.addHandler(dropshipping_handler)
    dropshipping_logger.addHandler(error_handler)
    dropshipping_logger.setLevel(logging.INFO)
    dropshipping_logger.propagate = False

    app.logger.info('Logging configured')
    app.logger.info(f'Logs written to: {log_dir}')
