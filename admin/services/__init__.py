from admin.services.metrics_service import MetricsService
