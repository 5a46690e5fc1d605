from django.urls import path

from requisition.views import (
    requisition_approve,
    requisition_approved,
    requisition_authorize,
    requisition_detail,
    requisition_for_approval,
    requisition_initiate,
    requisition_reject,
    requisition_release,
    requisition_search,
    requisition_skip,
    requisition_status_changes,
    requisition_submit,
)

urlpatterns = [
    path("initiate", requisition_initiate, name="requisition_initiate"),
    path("search", requisition_search, name="requisition_search"),
    path("for-approval", requisition_for_approval, name="requisition_for_approval"),
    path("approved", requisition_approved, name="requisition_approved"),
    path("<str:requisition_id>", requisition_detail, name="requisition_detail"),
    path("<str:requisition_id>/submit", requisition_submit, name="requisition_submit"),
    path("<str:requisition_id>/authorize", requisition_authorize, name="requisition_authorize"),
    path("<str:requisition_id>/approve", requisition_approve, name="requisition_approve"),
    path("<str:requisition_id>/reject", requisition_reject, name="requisition_reject"),
    path("<str:requisition_id>/release", requisition_release, name="requisition_release"),
    path("<str:requisition_id>/skip", requisition_skip, name="requisition_skip"),
    path(
        "<str:requisition_id>/status-changes",
        requisition_status_changes,
        name="requisition_status_changes",
    ),
]
