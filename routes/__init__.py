from routes.health import health_bp
from routes.auth import auth_bp
from routes.admin import admin_bp
from routes.booking import booking_bp
from routes.resources import resources_bp
from routes.widget import widget_bp
from routes.pets import pets_bp
