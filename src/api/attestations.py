"""
ResolveChain - Attestation and Verification API Blueprint

    POST /api/attestations                    attest a resolution on the ledger
    GET  /api/attestations/<int:id>           ledger attestation by id
    GET  /api/custody/<exchange>/<category>   local chain of custody
    POST /api/verify                          verify {resolution_id | evidence_hash}
    GET  /api/verify/<evidence_hash>          verify a bare commitment
    POST /api/evidence/hash                   precompute a commitment
    GET  /api/blockchain/info                 active network and attestor
    GET  /api/stats                           registry, engine and ledger statistics

Attestation submissions are retried here, at the frontend, for transient
ledger failures only. A retried attest re-checks the ledger before writing.
"""

import logging

from flask import Blueprint, jsonify

from api.state import get_services
from api.utils import get_json_body, parse_evidence, require_api_key, require_fields
from errors import LedgerUnavailableError
from evidence_hashing import CANONICAL_VERSION, EVIDENCE_HASH_ALGORITHM, hash_evidence_hex
from models import SUPPORTED_CHAINS
from monitoring import counted
from retry import retry_call

logger = logging.getLogger(__name__)

attestations_bp = Blueprint("attestations", __name__)


@attestations_bp.route("/api/attestations", methods=["POST"])
@require_api_key
def attest_resolution():
    """
    Anchor a resolution's evidence commitment on the ledger.

    Request body:
        {"resolution_id": "..."}

    Returns:
        201 with the new attestation, or 200 if the resolution was already attested
    """
    data = get_json_body()
    require_fields(data, {"resolution_id": str})

    services = get_services()
    resolution = services.engine.get_resolution(data["resolution_id"])
    already_attested = resolution.attestation is not None

    def log_retry(attempt: int, error: Exception, delay: float) -> None:
        logger.warning(
            f"Retrying attestation (attempt {attempt}) in {delay:.2f}s: {error}",
            extra={"resolution_id": resolution.id},
        )

    attestation = retry_call(
        services.gateway.attest,
        args=(resolution.id,),
        config=services.retry_config,
        on_retry=log_retry,
    )
    resolution = services.engine.get_resolution(resolution.id)

    return jsonify({
        "attestation": attestation.to_dict(),
        "resolution_id": resolution.id,
        "resolution_status": resolution.status.value,
    }), 200 if already_attested else 201


@attestations_bp.route("/api/attestations/<int:attestation_id>", methods=["GET"])
def get_attestation(attestation_id: int):
    return jsonify(get_services().gateway.get_by_id(attestation_id).to_dict())


@attestations_bp.route("/api/custody/<exchange>/<category>", methods=["GET"])
def get_custody_chain(exchange: str, category: str):
    chain = get_services().gateway.custody.chain(exchange, category)
    return jsonify({
        "exchange": exchange,
        "issue_category": category,
        "entries": chain,
        "length": len(chain),
        "latest": chain[-1]["evidence_hash"] if chain else None,
    })


@attestations_bp.route("/api/verify", methods=["POST"])
def verify():
    """
    Verify a resolution or a commitment against the ledger.

    Request body (exactly one of resolution_id / evidence_hash):
        {"resolution_id": "...", "strict": false}
        {"evidence_hash": "0x..."}
    """
    data = get_json_body()
    require_fields(data, {}, {"resolution_id": str, "evidence_hash": str, "strict": bool})

    result = get_services().verifier.verify(
        resolution_id=data.get("resolution_id"),
        evidence_hash=data.get("evidence_hash"),
        strict=data.get("strict", False),
    )
    return jsonify(result.to_dict())


@attestations_bp.route("/api/verify/<evidence_hash>", methods=["GET"])
def verify_commitment(evidence_hash: str):
    result = get_services().verifier.verify(evidence_hash=evidence_hash)
    return jsonify(result.to_dict())


@attestations_bp.route("/api/evidence/hash", methods=["POST"])
@counted("evidence_hash_requests_total")
def precompute_hash():
    """
    Compute the commitment a resolution with this evidence would carry.

    Request body:
        {"evidence": {...}}
    """
    data = get_json_body()
    require_fields(data, {"evidence": dict})

    evidence = get_services().engine.validate_evidence(parse_evidence(data["evidence"]))
    return jsonify({
        "evidence_hash": hash_evidence_hex(evidence),
        "algorithm": EVIDENCE_HASH_ALGORITHM,
        "canonical_version": CANONICAL_VERSION,
        "percentage_decrease": evidence.percentage_decrease,
    })


@attestations_bp.route("/api/blockchain/info", methods=["GET"])
def blockchain_info():
    services = get_services()
    ledger = services.ledger
    chain = ledger.chain_config

    info = {
        "network": services.settings.network,
        "chain": chain.to_dict(),
        "contract_url": chain.contract_url() if chain.contract_address else None,
        "attestor": ledger.attestor,
        "ledger": ledger.get_info(),
        "hash_algorithm": EVIDENCE_HASH_ALGORITHM,
        "connected": True,
        "supported_chains": {name: config.to_dict() for name, config in SUPPORTED_CHAINS.items()},
    }
    try:
        info["attestation_count"] = ledger.commitment_count()
    except LedgerUnavailableError as e:
        logger.warning(f"Ledger unavailable: {e.message}")
        info["connected"] = False

    return jsonify(info)


@attestations_bp.route("/api/stats", methods=["GET"])
def stats():
    services = get_services()
    result = services.engine.get_stats()
    gateway_stats = services.gateway.get_stats()

    if "on_chain_attestation_count" in gateway_stats:
        result["on_chain_attestation_count"] = gateway_stats["on_chain_attestation_count"]
    result["custody_chains"] = gateway_stats["custody_chains"]
    result["attestations_in_flight"] = gateway_stats["in_flight"]
    return jsonify(result)
