"""Public plan catalog endpoint."""
from __future__ import annotations

from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.errors import ValidationError
from billing.models import Subscription
from billing.permissions import billing_error_response
from billing.serializers import PlanSerializer
from billing.services.plan_catalog import list_public_plans


class PlanListView(APIView):
    """List the latest public version of each active plan, optionally filtered by ``ownerType``."""

    permission_classes = [AllowAny]

    def get(self, request):
        owner_type = request.query_params.get("ownerType") or None
        if owner_type is not None and owner_type not in Subscription.Type.values:
            return billing_error_response(
                ValidationError(
                    f"Unknown owner type '{owner_type}'.",
                    context={"allowed": list(Subscription.Type.values)},
                )
            )
        plans = list_public_plans(owner_type=owner_type)
        return Response({"plans": PlanSerializer(plans, many=True).data})
