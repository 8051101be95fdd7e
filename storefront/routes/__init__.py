from .automation import bp as automation_bp
from .billing import bp as billing_bp
from .health import bp as health_bp
from .stores import bp as stores_bp


def register_blueprints(app):
    for blueprint in (stores_bp, billing_bp, automation_bp, health_bp):
        app.register_blueprint(blueprint)
