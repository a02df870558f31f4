"""
POKT Monitor - HTTP API
Read-only analytics over Pocket Network accounts, nodes and rewards
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from flasgger import Swagger

from classifier import Transaction
from config import config
from errors import (
    BlockLookupError,
    ClassificationError,
    MonitoringError,
    RequestValidationError,
    ResolutionError,
    SourceError,
)
from monitoring_service import MonitoringService, NodeStatus
from rewards import MonthlyRewardSummary

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL),
    format=config.LOG_FORMAT
)
logger = logging.getLogger(__name__)


# ==================== RESPONSE MAPPING ====================

def format_time(moment: Optional[datetime]) -> Optional[str]:
    """RFC 3339 UTC timestamp"""
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def transaction_response(tx: Transaction) -> Dict[str, Any]:
    return {
        "hash": tx.hash,
        "height": tx.height,
        "time": format_time(tx.time),
        "type": tx.type,
        "chain_id": tx.chain_id,
        "chain": {"name": tx.chain.name, "id": tx.chain.id},
        "session_height": tx.session_height,
        "expire_height": tx.expire_height,
        "app_pubkey": tx.app_pubkey,
        "num_relays": tx.num_relays,
        "pokt_per_relay": float(tx.pokt_per_relay),
        "pokt_amount": float(tx.pokt_amount),
        "is_confirmed": tx.is_confirmed,
    }


def monthly_rewards_response(summary: MonthlyRewardSummary) -> Dict[str, Any]:
    return {
        "year": summary.year,
        "month": summary.month,
        "num_relays": summary.num_relays,
        "pokt_amount": float(summary.pokt_amount),
        "relays_by_chain": [
            {"chain": entry.chain, "name": entry.name, "num_relays": entry.num_relays}
            for entry in summary.relays_by_chain
        ],
        "avg_sec_between_rewards": summary.avg_sec_between_rewards,
        "total_sec_between_rewards": summary.total_sec_between_rewards,
        "transactions": [transaction_response(tx) for tx in summary.transactions],
        "days_of_week": {
            str(index): {"name": day.name, "num_proofs": day.num_proofs}
            for index, day in summary.days_of_week.items()
        },
    }


def node_response(node: NodeStatus) -> Dict[str, Any]:
    return {
        "address": node.address,
        "pubkey": node.pubkey,
        "service_url": node.service_url,
        "balance": node.balance,
        "staked_balance": node.staked_balance,
        "is_jailed": node.is_jailed,
        "chains": [{"name": chain.name, "id": chain.id} for chain in node.chains],
        "is_synced": node.is_synced,
        "latest_block_height": node.latest_block_height,
        "latest_block_time": format_time(node.latest_block_time),
    }


def error_response(endpoint: str, error: MonitoringError):
    """Map a typed failure to an HTTP status"""
    if isinstance(error, RequestValidationError):
        status = 400
    elif isinstance(error, (SourceError, BlockLookupError, ResolutionError)):
        status = 502
    elif isinstance(error, ClassificationError):
        status = 422
    else:
        status = 500

    if status >= 500:
        logger.error(f"{endpoint}: {error}")
    else:
        logger.warning(f"{endpoint}: {error}")
    return jsonify({"error": f"{endpoint}: {error}", "kind": type(error).__name__}), status


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise RequestValidationError(f"failed to parse request: {body!r}")
    return body


def _int_param(body: Dict[str, Any], name: str, default: int) -> int:
    value = body.get(name, default)
    if isinstance(value, bool):
        raise RequestValidationError(f"invalid '{name}': {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RequestValidationError(f"invalid '{name}': {value!r}")


def _required(body: Dict[str, Any], name: str) -> Any:
    value = body.get(name)
    if value in (None, ""):
        raise RequestValidationError(f"Missing required param '{name}'")
    return value


# ==================== FLASK APP ====================

app = Flask(__name__)
CORS(app, origins=config.CORS_ORIGINS)

# ==================== SWAGGER CONFIGURATION ====================

swagger_config = {
    "headers": [],
    "specs": [
        {
            "endpoint": 'apispec',
            "route": '/apispec.json',
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/api/docs"
}

swagger_template = {
    "info": {
        "title": "POKT Monitor API",
        "description": "Read-only analytics for Pocket Network nodes: height, node status, transactions and monthly rewards",
        "version": "1.0.0",
    },
    "basePath": "/",
    "schemes": ["https", "http"],
    "tags": [
        {"name": "Health", "description": "Health check endpoints"},
        {"name": "Chain", "description": "Chain height, params and block times"},
        {"name": "Nodes", "description": "Node status endpoints"},
        {"name": "Transactions", "description": "Transaction endpoints"},
        {"name": "Rewards", "description": "Monthly reward summaries"},
        {"name": "Relays", "description": "Relay simulation"},
    ]
}

swagger = Swagger(app, config=swagger_config, template=swagger_template)

service = MonitoringService.from_config(config)


# ==================== CHAIN ENDPOINTS ====================

@app.route("/v1/height", methods=["GET"])
def height_endpoint():
    """
    Get current chain height
    ---
    tags:
      - Chain
    responses:
      200:
        description: Latest block height
        schema:
          type: object
          properties:
            height:
              type: integer
      502:
        description: Node unavailable
    """
    try:
        return jsonify({"height": service.height()})
    except MonitoringError as e:
        return error_response("HeightEndpoint", e)


@app.route("/v1/params", methods=["POST"])
def params_endpoint():
    """
    Get chain parameters at a height
    ---
    tags:
      - Chain
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            height:
              type: integer
              description: Block height (0 for latest)
    responses:
      200:
        description: Parameters of every module
    """
    try:
        body = _json_body()
        return jsonify(service.params_at_height(_int_param(body, "height", 0)))
    except MonitoringError as e:
        return error_response("ParamsEndpoint", e)


@app.route("/v1/block_times", methods=["POST"])
def block_times_endpoint():
    """
    Resolve block heights to timestamps
    ---
    tags:
      - Chain
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            heights:
              type: array
              items:
                type: integer
    responses:
      200:
        description: Map of height to RFC 3339 UTC time
      400:
        description: Invalid heights
      502:
        description: A height could not be resolved
    """
    try:
        body = _json_body()
        heights = body.get("heights")
        if not isinstance(heights, list):
            raise RequestValidationError("Missing required param 'heights'")
        times = service.block_times(heights)
        return jsonify({str(height): format_time(times[height]) for height in sorted(times)})
    except MonitoringError as e:
        return error_response("BlockTimesEndpoint", e)


# ==================== NODE ENDPOINTS ====================

@app.route("/v1/node", methods=["POST"])
def node_endpoint():
    """
    Get node status
    ---
    tags:
      - Nodes
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            address:
              type: string
    responses:
      200:
        description: Node status
        schema:
          type: object
          properties:
            address:
              type: string
            pubkey:
              type: string
            service_url:
              type: string
            balance:
              type: integer
            staked_balance:
              type: integer
            is_jailed:
              type: boolean
            chains:
              type: array
              items:
                type: object
                properties:
                  name:
                    type: string
                  id:
                    type: string
            is_synced:
              type: boolean
            latest_block_height:
              type: integer
            latest_block_time:
              type: string
    """
    try:
        body = _json_body()
        return jsonify(node_response(service.node(_required(body, "address"))))
    except MonitoringError as e:
        return error_response("NodeEndpoint", e)


# ==================== TRANSACTION ENDPOINTS ====================

@app.route("/v1/transaction", methods=["POST"])
def transaction_endpoint():
    """
    Get transaction by hash
    ---
    tags:
      - Transactions
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            hash:
              type: string
    responses:
      200:
        description: Classified transaction
    """
    try:
        body = _json_body()
        return jsonify(transaction_response(service.transaction(_required(body, "hash"))))
    except MonitoringError as e:
        return error_response("TransactionEndpoint", e)


@app.route("/v1/account/transactions", methods=["POST"])
def account_transactions_endpoint():
    """
    Get a page of an account's transactions
    ---
    tags:
      - Transactions
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            address:
              type: string
            page:
              type: integer
              default: 1
            per_page:
              type: integer
              default: 30
            sort:
              type: string
              enum: [asc, desc]
              default: desc
    responses:
      200:
        description: Classified transactions
    """
    try:
        body = _json_body()
        txs = service.account_transactions(
            _required(body, "address"),
            page=_int_param(body, "page", 1),
            per_page=_int_param(body, "per_page", 30),
            sort=str(body.get("sort") or "desc"),
        )
        return jsonify([transaction_response(tx) for tx in txs])
    except MonitoringError as e:
        return error_response("AccountTransactionsEndpoint", e)


# ==================== REWARDS ENDPOINTS ====================

@app.route("/v1/rewards/monthly", methods=["POST"])
def monthly_rewards_endpoint():
    """
    Get monthly reward summaries, most recent month first
    ---
    tags:
      - Rewards
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            address:
              type: string
    responses:
      200:
        description: Monthly summaries
        schema:
          type: array
          items:
            type: object
            properties:
              year:
                type: integer
              month:
                type: integer
              num_relays:
                type: integer
              pokt_amount:
                type: number
              relays_by_chain:
                type: array
                items:
                  type: object
                  properties:
                    chain:
                      type: string
                    name:
                      type: string
                    num_relays:
                      type: integer
              avg_sec_between_rewards:
                type: number
              total_sec_between_rewards:
                type: number
              transactions:
                type: array
                items:
                  type: object
              days_of_week:
                type: object
      422:
        description: Too many malformed transactions
      502:
        description: Transactions or block times unavailable
    """
    try:
        body = _json_body()
        summaries = service.rewards_by_month(_required(body, "address"))
        return jsonify([monthly_rewards_response(summary) for summary in summaries])
    except MonitoringError as e:
        return error_response("MonthlyRewardsEndpoint", e)


# ==================== RELAY ENDPOINTS ====================

@app.route("/v1/relay/simulate", methods=["POST"])
def simulate_relay_endpoint():
    """
    Simulate a relay against a servicer
    ---
    tags:
      - Relays
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            servicer_url:
              type: string
            chain_id:
              type: string
            payload:
              type: object
    responses:
      200:
        description: Servicer response
      400:
        description: Missing parameter
    """
    try:
        body = _json_body()
        result = service.simulate_relay(
            body.get("servicer_url"), body.get("chain_id"), body.get("payload")
        )
        return jsonify(result)
    except MonitoringError as e:
        return error_response("SimulateRelayEndpoint", e)


# ==================== HEALTH CHECK ====================

@app.route("/health", methods=["GET"])
def health_check():
    """
    Health check
    ---
    tags:
      - Health
    responses:
      200:
        description: Health status
        schema:
          type: object
          properties:
            status:
              type: string
              description: Overall health status (healthy/degraded)
            node:
              type: object
              properties:
                reachable:
                  type: boolean
                url:
                  type: string
            cache:
              type: object
            timestamp:
              type: number
    """
    try:
        service.height()
        node_status = True
    except MonitoringError as e:
        logger.warning(f"Node health degraded: {e}")
        node_status = False

    return jsonify({
        "status": "healthy" if node_status else "degraded",
        "monitor": "running",
        "node": {
            "reachable": node_status,
            "url": config.POCKET_NODE_URL
        },
        "cache": service.cache.get_stats(),
        "block_times": dict(service.resolver.stats),
        "relay_rates": dict(service.rate_resolver.stats),
        "timestamp": time.time()
    }), 200


# ==================== INFO ENDPOINT ====================

@app.route("/", methods=["GET"])
def monitor_info():
    """
    Monitor information
    ---
    tags:
      - Health
    responses:
      200:
        description: Service information
    """
    return jsonify({
        "name": "POKT Monitor",
        "version": "1.0.0",
        "endpoints": {
            "height": "/v1/height",
            "params": "/v1/params",
            "block_times": "/v1/block_times",
            "node": "/v1/node",
            "transaction": "/v1/transaction",
            "account_transactions": "/v1/account/transactions",
            "monthly_rewards": "/v1/rewards/monthly",
            "simulate_relay": "/v1/relay/simulate",
            "health": "/health",
            "swagger_docs": "/api/docs",
            "openapi_spec": "/apispec.json"
        },
        "chains": [{"id": chain.id, "name": chain.name} for chain in service.chain_table.all()],
        "node_url": config.POCKET_NODE_URL,
        "timestamp": time.time()
    })


def main() -> None:
    logger.info("Starting POKT Monitor")
    logger.info(f"Node URL: {config.POCKET_NODE_URL}")
    logger.info(f"Cache: {'redis ' + config.REDIS_URL if config.REDIS_URL else 'memory'}")
    logger.info(f"Port: {config.MONITOR_PORT}")

    app.run(
        host=config.MONITOR_HOST,
        port=config.MONITOR_PORT,
        debug=config.DEBUG,
        threaded=True
    )


if __name__ == "__main__":
    main()
