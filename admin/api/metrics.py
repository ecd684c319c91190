from flask import request, current_app, make_response
from admin.api import admin_api_bp
from admin.api.common import ok, no_store
from admin.errors import AdminError, BadRequest, ServerError
from admin.permissions import authenticated, caller_is_admin
from admin.services.metrics_service import MetricsService
from admin.services.time_ranges import parse_date_range
from billing import billing_services
from extensions import limiter


def _metrics_limit():
    return current_app.config.get("METRICS_RATE_LIMIT", "30 per minute")


@admin_api_bp.get("/metrics")
@limiter.limit(_metrics_limit)
@authenticated
def get_metrics():
    """
    ?from=YYYY-MM-DD&to=YYYY-MM-DD (inclusive, UTC; default Jan 1 .. today)
    """
    try:
        start, end = parse_date_range(request.args.get("from"), request.args.get("to"))
    except ValueError as e:
        raise BadRequest(str(e), details={"from": request.args.get("from"), "to": request.args.get("to")})

    svc = MetricsService(billing_services().gateway)
    try:
        data = svc.aggregate(start, end, is_admin=caller_is_admin())
    except AdminError:
        raise
    except Exception as e:
        current_app.logger.exception("[admin.metrics] aggregation failed for %s..%s", start.date(), end.date())
        raise ServerError(f"Failed to load metrics: {e}", details={"retryable": True})

    return no_store(make_response(ok(data)))
