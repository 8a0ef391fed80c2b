"""
Custom domain SSL endpoints.

REST API endpoints for provisioning, renewing and removing certificates
of custom domains, plus engine status and on-demand renewal checks.
"""

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
import logging

from core.cert_manager import get_cert_manager
from core.cert_scheduler import get_renewal_scheduler
from models.certificate import (
    CertificateInfo,
    ProvisioningResult,
    RenewalSummary,
    SchedulerStatus,
    SSLAcceptedResponse,
    SSLAction,
    SSLActionRequest,
    SSLOverview,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Custom Domain SSL"])


def _not_found(domain_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={
            "error": "domain_not_found",
            "message": f"Domain not found: {domain_id}",
            "suggestion": "Check the domain id"
        }
    )


@router.get(
    "/domains/{domain_id}/ssl",
    response_model=CertificateInfo,
    summary="Get Domain Certificate",
    description="""
    Get SSL certificate details for a custom domain.

    Status is refined from the stored value using the certificate expiry:
    `expiring` inside the renewal window, `expired` once past not-after.
    """,
    responses={
        200: {"description": "Certificate details"},
        404: {"description": "Domain not found"}
    }
)
async def get_domain_ssl(domain_id: str) -> CertificateInfo:
    cert_manager = get_cert_manager()
    info = await cert_manager.get_certificate_info(domain_id)
    if not info:
        raise _not_found(domain_id)
    return info


@router.post(
    "/domains/{domain_id}/ssl",
    response_model=ProvisioningResult | SSLAcceptedResponse,
    summary="Provision or Renew Domain Certificate",
    description="""
    Run an SSL action for a verified custom domain.

    **Actions:**
    - `provision`: Request a certificate and wait for the result
    - `renew`: Re-provision the certificate and wait for the result
    - `provision-async`: Start provisioning in the background (202)

    A failed certificate request is reported in the body with
    `success: false`; the domain's status is set to `error`.
    """,
    responses={
        200: {"description": "Provisioning finished (see success flag)"},
        202: {"description": "Provisioning started in the background"},
        400: {"description": "Domain not verified"},
        404: {"description": "Domain not found"}
    }
)
async def post_domain_ssl(domain_id: str, request: SSLActionRequest | None = None):
    request = request or SSLActionRequest()
    cert_manager = get_cert_manager()

    record = await cert_manager.domains.get(domain_id)
    if not record:
        raise _not_found(domain_id)
    if not record.verified:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "domain_not_verified",
                "message": "Domain must be verified before provisioning SSL",
                "suggestion": "Complete domain verification first"
            }
        )

    if request.action == SSLAction.PROVISION_ASYNC:
        cert_manager.trigger_provisioning_in_background(domain_id)
        accepted = SSLAcceptedResponse(
            domain_id=domain_id,
            message=f"Provisioning started for {record.domain}"
        )
        return JSONResponse(status_code=202, content=accepted.model_dump(mode="json"))

    if request.action == SSLAction.RENEW:
        return await cert_manager.renew(domain_id)

    return await cert_manager.provision(domain_id, challenge_type=request.challenge_type)


@router.delete(
    "/domains/{domain_id}/ssl",
    summary="Remove Domain Certificate",
    description="""
    Detach the certificate from a custom domain.

    The domain returns to `pending` and is served over HTTP only.
    The certificate is not revoked at the certificate authority.
    """,
    responses={
        200: {"description": "Certificate removed"},
        404: {"description": "Domain not found"}
    }
)
async def delete_domain_ssl(domain_id: str) -> dict:
    cert_manager = get_cert_manager()
    if not await cert_manager.revoke(domain_id):
        raise _not_found(domain_id)
    return {"success": True, "domain_id": domain_id, "message": "Certificate removed"}


@router.get(
    "/ssl/status",
    response_model=SSLOverview,
    summary="Certificate Engine Status",
    description="Certificate counts by status, ACME configuration and renewal scheduler state."
)
async def get_ssl_status() -> SSLOverview:
    cert_manager = get_cert_manager()
    scheduler = get_renewal_scheduler()
    return SSLOverview(
        certificates=await cert_manager.get_status(),
        acme=cert_manager.acme.get_status(),
        scheduler=SchedulerStatus(
            running=scheduler.is_running,
            interval_hours=scheduler.interval_hours,
            next_run=scheduler.get_next_run_time()
        )
    )


@router.post(
    "/ssl/renewal-check",
    response_model=RenewalSummary,
    summary="Run Renewal Check",
    description="""
    Run a renewal pass now, followed by expiry warnings.

    Certificates inside the renewal window are re-provisioned one at a time.
    """,
    responses={
        200: {"description": "Renewal summary"},
        500: {"description": "Renewal pass failed"}
    }
)
async def run_renewal_check() -> RenewalSummary:
    summary = await get_renewal_scheduler().trigger_check()
    if summary is None:
        raise HTTPException(
            status_code=500,
            detail={
                "error": "renewal_check_failed",
                "message": "Renewal check failed",
                "suggestion": "Check the server logs for details"
            }
        )
    return summary
