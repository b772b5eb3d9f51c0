"""
Flask API over the customer receipts service.

Routes:
  GET  /health
  GET  /api/customers                  cached-or-synced customer aggregates
  POST /api/customers/refresh          full refetch, then aggregates
  GET  /api/customers/history          ?customer=...&store=... receipts of one group
  GET  /api/sync/status                whether the staleness window has passed
"""
import asyncio
import atexit
import logging
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

from customer_aggregates import NO_STORE_NAME, UNKNOWN_CUSTOMER, CustomerAggregate
from customer_service import CustomerService, create_service
from sync_config import SyncConfig
from sync_errors import RemoteError, ReceiptSyncError


def _customer_summary(customer: CustomerAggregate) -> Dict[str, Any]:
    data = customer.to_dict()
    data.pop('receipts', None)
    return data


def create_app(service: Optional[CustomerService] = None, config: Optional[SyncConfig] = None) -> Flask:
    app = Flask(__name__)
    config = config or (service.config if service else SyncConfig.from_env())
    try:
        app.logger.setLevel(config.log_level_value)
    except Exception:
        app.logger.setLevel(logging.INFO)

    if service is None:
        service = create_service(config)
    if not service.cache.is_open:
        asyncio.run(service.open())
        atexit.register(lambda: asyncio.run(service.close()))
    app.config['CUSTOMER_SERVICE'] = service

    def _collect_progress(lines: List[Dict[str, Any]]):
        def _progress(message: str, count: int) -> None:
            app.logger.debug('%s (%d)', message, count)
            lines.append({'message': message, 'count': count})
        return _progress

    def _aggregates_response(refresh: bool):
        progress: List[Dict[str, Any]] = []
        try:
            if refresh:
                customers = asyncio.run(service.force_refresh(_collect_progress(progress)))
            else:
                customers = asyncio.run(service.get_customer_aggregates(_collect_progress(progress)))
        except RemoteError as exc:
            app.logger.warning('Receipt sync failed: %s', exc)
            return jsonify({'status': 'error', 'message': str(exc), 'progress': progress}), 502
        except ReceiptSyncError as exc:
            app.logger.exception('Receipt sync failed')
            return jsonify({'status': 'error', 'message': str(exc), 'progress': progress}), 500
        return jsonify({
            'status': 'success',
            'customers': [_customer_summary(c) for c in customers],
            'decision': service.last_decision.value if service.last_decision else None,
            'progress': progress,
        })

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    @app.route('/api/customers')
    def get_customers():
        """Customer aggregates, syncing with ERPNext first when needed"""
        return _aggregates_response(refresh=False)

    @app.route('/api/customers/refresh', methods=['POST'])
    def refresh_customers():
        """Drop the watermark and refetch every receipt"""
        return _aggregates_response(refresh=True)

    @app.route('/api/customers/history')
    def customer_history():
        customer = (request.args.get('customer') or '').strip() or UNKNOWN_CUSTOMER
        store = (request.args.get('store') or '').strip() or NO_STORE_NAME
        receipts = service.get_receipt_history((customer, store))
        return jsonify({'status': 'success', 'customer': customer, 'store': store, 'receipts': receipts})

    @app.route('/api/sync/status')
    def sync_status():
        try:
            needed = asyncio.run(service.is_refresh_needed())
        except ReceiptSyncError as exc:
            app.logger.warning('Refresh status check failed: %s', exc)
            needed = True
        return jsonify({'status': 'success', 'refresh_needed': needed})

    return app
