from .credits import credits_bp
from .payments import payments_bp
from .study import study_bp
from .health import health_bp

__all__ = ['credits_bp', 'payments_bp', 'study_bp', 'health_bp']
