from flask import Flask

from fiscalmatch.config import Config
from fiscalmatch.models import db


def init_db(database_uri=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if database_uri:
        app.config['SQLALCHEMY_DATABASE_URI'] = database_uri

    db.init_app(app)

    with app.app_context():
        db.create_all()
        print(f"Database initialized successfully at {app.config['SQLALCHEMY_DATABASE_URI']}")
    return app


if __name__ == '__main__':
    init_db()
