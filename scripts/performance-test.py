#!/usr/bin/env python3
import sys
import os
import time
from decimal import Decimal

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from reconciliation_engine import ReconciliationEngine, SourceData
from models import Cancellation, OrderLine, Payment, ReconciliationStatus, ReturnCharge, ReturnRecord

# Generate test data: 10,000 delivered lines, every 20th one cancelled,
# every 10th one returned with a return charge.
orders = [OrderLine(
    order_line_id=f'{9000000000000000000 + i}',
    order_status='C',
    final_amount=Decimal('499.00'),
    period='2025-01',
) for i in range(10000)]
cancellations = [Cancellation(order_line_id=o.order_line_id) for o in orders[::20]]
returns = [ReturnRecord(order_line_id=o.order_line_id) for o in orders[5::10]]
return_charges = [ReturnCharge(
    order_line_id=r.order_line_id,
    actual_settlement=Decimal('-60.00'),
) for r in returns]
payments = [Payment(
    order_line_id=o.order_line_id,
    customer_paid_amount=Decimal('499.00'),
    expected_settlement=Decimal('420.00'),
    actual_settlement=Decimal('420.00'),
) for o in orders]

sources = SourceData(orders, cancellations, returns, payments, return_charges)

# Performance test
start_time = time.time()
engine = ReconciliationEngine(store=None)
results = engine.build_results(sources, '2025-01')
duration = time.time() - start_time

matched = sum(1 for r in results if r.reconciliation_status is ReconciliationStatus.MATCHED)
print(f'Reconciled 10,000 order lines in {duration:.2f} seconds')
assert duration < 30, f'Performance test failed: {duration:.2f}s > 30s'
assert len(results) == 10000, f'Expected 10000 results, got {len(results)}'
assert matched == 9000, f'Expected 9000 matched, got {matched}'
print('Performance test passed')
