"""
Blueprint registration for the school portal.

All API blueprints share the /api prefix through their route paths;
attachment downloads live under /files.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.core import bp as core_bp
    from blueprints.files import bp as files_bp
    from blueprints.students import bp as students_bp
    from blueprints.communication import bp as communication_bp
    from blueprints.homework import bp as homework_bp
    from blueprints.staff import bp as staff_bp
    from blueprints.scheduling import bp as scheduling_bp
    from blueprints.games import bp as games_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(files_bp)
    app.register_blueprint(students_bp)
    app.register_blueprint(communication_bp)
    app.register_blueprint(homework_bp)
    app.register_blueprint(staff_bp)
    app.register_blueprint(scheduling_bp)
    app.register_blueprint(games_bp)
