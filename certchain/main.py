from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from . import config
from .anchor import is_valid_pubkey
from .backends import build_service
from .conflicts import HashConflictReport
from .diagnostics import CertificateDiagnostics
from .errors import ChainUnavailableError, SignerUnavailableError, StoreError
from .hashing import is_valid_hash_format
from .logging_config import configure_logging, set_request_id
from .models import (
    BatchVerifyRequest,
    CertificateCreate,
    InstitutionCreate,
    ResolveConflictRequest,
    RevokeRequest,
)
from .security import verify_admin_request
from .service import UnifiedCertificateService
from .util import now_epoch

app = FastAPI(title="CertChain")

SERVICE: Optional[UnifiedCertificateService] = None


def configure(service: UnifiedCertificateService) -> None:
    global SERVICE
    SERVICE = service


def get_service() -> UnifiedCertificateService:
    if SERVICE is None:
        raise HTTPException(503, "SERVICE_NOT_CONFIGURED")
    return SERVICE


@app.on_event("startup")
def _startup():
    configure_logging(config.LOG_LEVEL, config.LOG_JSON, config.LOG_FILE or None)
    if SERVICE is None:
        configure(build_service())


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(SignerUnavailableError)
def _signer_unavailable(request: Request, exc: SignerUnavailableError):
    return JSONResponse(status_code=503, content={"detail": "SIGNER_UNAVAILABLE", "error": str(exc)})


@app.exception_handler(ChainUnavailableError)
def _chain_unavailable(request: Request, exc: ChainUnavailableError):
    return JSONResponse(status_code=503, content={"detail": "CHAIN_UNAVAILABLE", "error": str(exc)})


@app.exception_handler(StoreError)
def _store_error(request: Request, exc: StoreError):
    return JSONResponse(status_code=500, content={"detail": "STORE_ERROR", "error": str(exc)})


def require_admin(
    request: Request,
    x_wallet_address: Optional[str] = Header(None),
    x_wallet_timestamp: Optional[str] = Header(None),
    x_wallet_signature: Optional[str] = Header(None),
) -> str:
    ok = verify_admin_request(
        x_wallet_address, x_wallet_timestamp, x_wallet_signature,
        method=request.method,
        path=request.url.path,
        admin_wallets=config.load_admin_wallets(),
        now_epoch=now_epoch(),
        max_age=config.ADMIN_SIGNATURE_MAX_AGE,
    )
    if not ok:
        raise HTTPException(403, "ADMIN_SIGNATURE_REQUIRED")
    return x_wallet_address


def _respond(status_code: int, payload) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


@app.get("/health")
def health(svc: UnifiedCertificateService = Depends(get_service)):
    return CertificateDiagnostics(svc.store, svc.chain).check_connectivity()


# ============================================================
# Certificates
# ============================================================

@app.get("/certificates")
def list_certificates(
    issued_by: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    svc: UnifiedCertificateService = Depends(get_service),
):
    return svc.list_certificates(issued_by, limit, offset)


@app.post("/certificates")
def create_certificate(
    req: CertificateCreate,
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    """
    Issue a certificate. The request is signed by an allowlisted admin wallet.

    The deployment issues for a single institution: when the service holds a
    signer, `issued_by` must be that signer's wallet (checked by the service).
    Without one, `issued_by` must be the admin wallet that signed the request.
    """
    if svc.signer is None and req.issued_by != admin:
        raise HTTPException(403, "ISSUER_NOT_REQUEST_SIGNER")
    result = svc.create_certificate(req.model_dump())
    if result.success:
        status = 201
    elif result.partial_success is not None:
        status = 202
    else:
        status = {"validation": 400, "duplicate": 409}.get(result.error_type, 500)
    return _respond(status, result.to_dict())


@app.get("/certificates/{certificate_id}")
def get_certificate(certificate_id: str, svc: UnifiedCertificateService = Depends(get_service)):
    record = svc.get_certificate(certificate_id)
    if record is None:
        raise HTTPException(404, "NOT_FOUND")
    return record.to_dict()


@app.get("/certificates/{certificate_id}/verifications")
def verification_history(certificate_id: str, svc: UnifiedCertificateService = Depends(get_service)):
    history = svc.verification_history(certificate_id)
    if history is None:
        raise HTTPException(404, "NOT_FOUND")
    return [entry.to_dict() for entry in history]


@app.post("/certificates/{certificate_id}/revoke")
def revoke_certificate(
    certificate_id: str,
    req: RevokeRequest,
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    result = svc.revoke_certificate(certificate_id, reason=req.reason)
    if result.success:
        status = 200
    elif result.partial_success is not None:
        status = 202
    elif result.error == "Certificate not found":
        status = 404
    else:
        status = 409
    return _respond(status, result.to_dict())


@app.post("/certificates/verify/batch")
def batch_verify(req: BatchVerifyRequest, svc: UnifiedCertificateService = Depends(get_service)):
    items = [item.model_dump(exclude_none=True) for item in req.items]
    return svc.batch_verify_certificate_hashes(items).to_dict()


@app.get("/verify/{certificate_id}")
def verify_certificate(
    certificate_id: str,
    request: Request,
    institution: Optional[str] = None,
    provided_hash: Optional[str] = Query(None, alias="hash"),
    verifier: Optional[str] = None,
    svc: UnifiedCertificateService = Depends(get_service),
):
    if provided_hash is not None and not is_valid_hash_format(provided_hash):
        raise HTTPException(422, "MALFORMED_HASH")
    if verifier is not None and not is_valid_pubkey(verifier):
        raise HTTPException(422, "MALFORMED_VERIFIER")
    forwarded = request.headers.get("X-Forwarded-For") or request.headers.get("X-Real-IP")
    result = svc.verify_certificate(
        certificate_id,
        provided_hash=provided_hash,
        institution=institution,
        verifier=verifier,
        ip_address=forwarded or (request.client.host if request.client else None),
        user_agent=request.headers.get("User-Agent"),
    )
    return jsonable_encoder(result.to_dict())


# ============================================================
# Reconciliation
# ============================================================

@app.get("/blockchain/sync")
def sync_status(issued_by: str, svc: UnifiedCertificateService = Depends(get_service)):
    status = svc.sync_status(issued_by)
    return _respond(502 if status.error else 200, status.to_dict())


@app.post("/blockchain/sync")
def sync_certificates(
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    result = svc.sync_certificates()
    return _respond(200 if result.success else 207, result.to_dict())


# ============================================================
# Institutions
# ============================================================

@app.get("/institutions")
def list_institutions(svc: UnifiedCertificateService = Depends(get_service)):
    return [i.to_dict() for i in svc.store.list_institutions()]


@app.post("/institutions")
def register_institution(
    req: InstitutionCreate,
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    result = svc.register_institution(req.name, req.location)
    if result.success:
        status = 201
    elif result.partial_success is not None:
        status = 202
    else:
        status = 400
    return _respond(status, result.to_dict())


@app.post("/institutions/{authority}/verify")
def verify_institution(
    authority: str,
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    result = svc.verify_institution(authority, admin, config.load_admin_wallets())
    if result.success:
        status = 200
    elif result.partial_success is not None:
        status = 202
    elif result.error == "Institution not found":
        status = 404
    else:
        status = 409
    return _respond(status, result.to_dict())


# ============================================================
# Admin
# ============================================================

@app.get("/admin/hash-conflicts")
def hash_conflicts(
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    report: HashConflictReport = svc.resolver.find_hash_conflicts()
    return report.to_dict()


@app.post("/admin/hash-conflicts/resolve")
def resolve_hash_conflicts(
    req: ResolveConflictRequest,
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    if req.certificate_id:
        return svc.resolve_hash_conflict(req.certificate_id)
    return svc.resolver.resolve_all_hash_conflicts().to_dict()


@app.get("/admin/certificates/{certificate_id}/debug")
def debug_certificate(
    certificate_id: str,
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    return CertificateDiagnostics(svc.store, svc.chain).debug_certificate(certificate_id)


@app.get("/admin/diagnostics")
def diagnostics(
    admin: str = Depends(require_admin),
    svc: UnifiedCertificateService = Depends(get_service),
):
    return CertificateDiagnostics(svc.store, svc.chain).run_all(config.load_admin_wallets())
