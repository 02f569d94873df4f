import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import click
from flask import Flask, current_app
from flask.cli import with_appcontext
from flask.logging import default_handler
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

# Import db from extensions
from vbms.extensions import db
from vbms.config import CheckSettings, load_config
from vbms.errors import StoreError, VbmsError
from vbms.functions.scheduler import CycleScheduler

# Import models after db to register them
from vbms.models import Server

LOG_FORMAT = '%(asctime)s - %(levelname)s - Server: %(server)s - Service: %(service)s - Port: %(port)s - %(message)s'


class ContextDefaultsFilter(logging.Filter):
    """Fill in the per-check fields for log lines that were not given them."""

    def filter(self, record):
        for name in ('server', 'service', 'port'):
            if not hasattr(record, name):
                setattr(record, name, '-')
        return True


def configure_logging(app):
    log_dir = app.config['LOG_DIR']
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)
    formatter = logging.Formatter(LOG_FORMAT)
    app.logger.removeHandler(default_handler)

    file_handler = RotatingFileHandler(os.path.join(log_dir, 'vbms.log'), maxBytes=1000000, backupCount=5)
    stream_handler = logging.StreamHandler()
    for handler in (file_handler, stream_handler):
        handler.setFormatter(formatter)
        handler.addFilter(ContextDefaultsFilter())
        app.logger.addHandler(handler)
    app.logger.setLevel(app.config['LOG_LEVEL'])


def create_app(config=None):
    """Build the Flask application that owns the store and the settings.

    ``config`` overrides the environment; it is mostly used by tests.
    """
    app = Flask('vbms')
    app.config.update(load_config(config))
    db_path = os.path.abspath(app.config['DATABASE_PATH'])
    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{db_path}'
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    # Runner threads share the file; wait on locks rather than failing
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {'connect_args': {'timeout': 30, 'check_same_thread': False}}

    db.init_app(app)
    app.cli.add_command(init_db_command)
    return app


@click.command('init-db')
@with_appcontext
def init_db_command():
    """Create the servers table in the configured database."""
    db.create_all()
    click.echo(f"Initialized {current_app.config['DATABASE_PATH']}")


def verify_database(app):
    """Refuse to start unless the sqlite store already exists with its table."""
    path = app.config['DATABASE_PATH']
    # sqlite creates an empty file on connect, so check for it first
    if not os.path.exists(path):
        raise StoreError(f"Unable to locate {path} sqlite database")

    with app.app_context():
        try:
            has_table = inspect(db.engine).has_table(Server.__tablename__)
        except SQLAlchemyError as e:
            raise StoreError(f"Unable to open {path} sqlite database: {e}") from e
    if not has_table:
        raise StoreError(f"{path} has no {Server.__tablename__} table")


def main():
    try:
        app = create_app()
    except VbmsError as e:
        logging.basicConfig(format='%(asctime)s - %(levelname)s - %(message)s')
        logging.getLogger('vbms').critical(str(e))
        return 1

    configure_logging(app)
    settings = CheckSettings.from_app_config(app.config)
    try:
        verify_database(app)
        scheduler = CycleScheduler(app, settings)
        app.logger.info(
            f"Checking up to {settings.batch_size} servers every {settings.update_tick}s "
            f"with {settings.max_runners} runners"
        )
        scheduler.run()
    except VbmsError as e:
        app.logger.critical(str(e))
        return 1
    except KeyboardInterrupt:
        app.logger.info("Interrupted, shutting down")
    return 0


if __name__ == '__main__':
    sys.exit(main())
