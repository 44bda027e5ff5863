import logging
import time
from concurrent.futures import ThreadPoolExecutor

from fiscalmatch.distributor import items_total, to_major
from fiscalmatch.exceptions import FiscalApiError
from fiscalmatch.matcher import match_orders
from fiscalmatch.models import utcnow
from fiscalmatch.orders import normalize_order_id
from fiscalmatch.receipts import build_waybill_receipt, items_from_line_items

logger = logging.getLogger(__name__)


def chunked(values, size):
    size = max(int(size), 1)
    return [values[i:i + size] for i in range(0, len(values), size)]


def fetch_orders(order_ids, order_store, group_size=5):
    """
    Looks orders up one id per worker, one group at a time.

    Every lookup settles: a failing one is reported in the errors list and the
    rest of the group still counts. Returns (orders, errors).
    """
    orders, errors = [], []
    for group in chunked(order_ids, group_size):
        with ThreadPoolExecutor(max_workers=len(group)) as executor:
            futures = [(order_id, executor.submit(order_store.find_orders, [order_id])) for order_id in group]

        for order_id, future in futures:
            error = future.exception()
            if error is not None:
                logger.error('Failed to fetch order %s: %s', order_id, error)
                errors.append({'orderId': order_id, 'error': str(error)})
                continue
            found = future.result()
            if not found:
                errors.append({'orderId': order_id, 'error': 'Order not found'})
                continue
            orders.extend(found)
    return orders, errors


def receipt_note(result, ettn=None):
    lines = [
        'Fiscal check issued',
        f'Receipt ID: {result.receipt_id}',
        f"Fiscal Code: {result.fiscal_code or 'N/A'}",
    ]
    if ettn:
        lines.append(f'ETTN: {ettn}')
    lines.append(f'Created: {utcnow().isoformat()}')
    return '\n'.join(lines)


def verify_order_payments(order_ids, order_store, issuer=None, auto_create_checks=False,
                          group_size=5, lookback_days=30, delay=0.8, sleep=time.sleep):
    if not isinstance(order_ids, (list, tuple)):
        return {'success': False, 'error': 'orderIds parameter is required and must be an array'}

    ids = [normalize_order_id(order_id) for order_id in order_ids]
    logger.info('Verifying payments for %d orders', len(ids))

    orders, errors = fetch_orders(ids, order_store, group_size)
    results = match_orders(orders, lookback_days=lookback_days)
    orders_by_id = {order.id: order for order in orders}

    checks = []
    if auto_create_checks and issuer is not None:
        pending = [(result, match) for result in results for match in result.matches]
        for index, (result, match) in enumerate(pending):
            if index > 0:
                sleep(delay)
            issued = issuer.issue_check(match['transactionId'], match['amount'], {'id': result.order_id})
            entry = dict(issued.to_dict(), orderId=result.order_id, transactionId=match['transactionId'])
            checks.append(entry)
            if not issued.success or issued.already_issued:
                continue

            order = orders_by_id[result.order_id]
            try:
                order_store.update_order_note(order.id, order.shop_id, receipt_note(issued), mark_as_paid=True)
            except Exception as e:
                logger.error('Failed to update note for order %s: %s', order.id, e)
                errors.append({'orderId': order.id, 'error': f'Note update failed: {e}'})

    summary = {
        'ordersRequested': len(ids),
        'ordersChecked': len(orders),
        'ordersWithMatches': sum(1 for result in results if result.matches),
        'alreadyVerified': sum(1 for result in results if result.already_verified),
        'checksIssued': sum(1 for check in checks if check['success'] and not check.get('alreadyIssued')),
        'errors': len(errors),
    }
    logger.info('Order payment verification finished: %s', summary)

    response = {
        'success': True,
        'results': [result.to_dict() for result in results],
        'summary': summary,
    }
    if checks:
        response['checks'] = checks
    if errors:
        response['errors'] = errors
    return response


def _waybill_receipt(order_data, fiscal_client, order_store):
    order_id = order_data.get('orderId')
    ettn = order_data.get('trackingNumber')
    if not ettn:
        return {'orderId': order_id, 'error': 'No ETTN/tracking number found'}

    found = order_store.find_orders([order_id])
    if not found:
        return {'orderId': order_id, 'error': 'Order not found'}
    order = found[0]

    items = items_from_line_items(order_data.get('lineItems') or order.line_items)
    if not items:
        return {'orderId': order_id, 'error': 'Order has no line items'}

    logger.info('Creating waybill receipt for order %s (ETTN %s), %d items, %s UAH',
                order.name, ettn, len(items), to_major(items_total(items)))
    receipt = fiscal_client.create_waybill_receipt(build_waybill_receipt(items, ettn))

    note = '\n'.join([
        'Checkbox Receipt Created',
        f'Receipt ID: {receipt.id}',
        f"Fiscal Code: {receipt.fiscal_code or 'N/A'}",
        f'ETTN: {ettn}',
        f'Created: {utcnow().isoformat()}',
    ])
    order_store.update_order_note(order.id, order.shop_id, note)

    return {
        'orderId': order_id,
        'orderName': order.name,
        'success': True,
        'receiptId': receipt.id,
        'fiscalCode': receipt.fiscal_code,
        'ettnNumber': ettn,
    }


def create_waybill_receipts(orders_payload, fiscal_client, order_store, delay=0.8, sleep=time.sleep):
    if not orders_payload:
        return {'success': False, 'error': 'Orders data required'}

    logger.info('Processing %d waybill receipts', len(orders_payload))
    try:
        fiscal_client.sign_in()
        fiscal_client.ensure_shift_open()
    except FiscalApiError as e:
        logger.error('Fiscal service unavailable: %s', e)
        return {'success': False, 'error': str(e)}

    results = []
    for index, order_data in enumerate(orders_payload):
        if index > 0:
            sleep(delay)
        try:
            results.append(_waybill_receipt(order_data, fiscal_client, order_store))
        except Exception as e:
            logger.error('Error processing order %s: %s', order_data.get('orderId'), e)
            results.append({'orderId': order_data.get('orderId'), 'error': str(e)})

    created = sum(1 for result in results if result.get('success'))
    logger.info('Waybill receipts done: %d of %d created', created, len(results))
    return {'success': True, 'results': results, 'created': created}
