import unittest

from customer_aggregates import (
    NO_STORE_NAME,
    UNKNOWN_CUSTOMER,
    CustomerAggregate,
    aggregate_receipts,
    coerce_total,
)


def _receipt(rid, customer, store, total):
    return {"id": rid, "date": "2024-01-01T09:00:00.000Z", "customer_name": customer,
            "store_name": store, "total": total}


class CoerceTotalTest(unittest.TestCase):
    def test_numeric_strings_and_numbers(self):
        self.assertEqual(coerce_total("12.50"), 12.5)
        self.assertEqual(coerce_total(" 1,200.00 "), 1200.0)
        self.assertEqual(coerce_total(7), 7.0)

    def test_non_numeric_counts_as_zero(self):
        for value in (None, "", "abc", {"x": 1}, [], float("nan"), float("inf"), True, "12,50", "1,23,4"):
            self.assertEqual(coerce_total(value), 0.0, value)

    def test_only_thousands_commas_are_dropped(self):
        self.assertEqual(coerce_total("1,234.50"), 1234.5)
        self.assertEqual(coerce_total("12,345,678"), 12345678.0)
        self.assertEqual(coerce_total("12,50"), 0.0)
        receipts = [_receipt("1", "Ann", "Alpha", "12,50"), _receipt("2", "Ann", "Alpha", "1,234.50")]
        self.assertEqual(aggregate_receipts(receipts)[0].total_spent, 1234.5)


class AggregateReceiptsTest(unittest.TestCase):
    def test_groups_by_customer_and_store_with_totals(self):
        receipts = [
            _receipt("1", "Ann", "Zeta", "10.00"),
            _receipt("2", "Ann", "Alpha", 5),
            _receipt("3", "Ann", "Zeta", 2.5),
            _receipt("4", "Bob", "Alpha", "oops"),
        ]
        customers = aggregate_receipts(receipts)
        by_key = {c.key: c for c in customers}
        self.assertEqual(by_key[("Ann", "Zeta")].total_spent, 12.5)
        self.assertEqual(by_key[("Ann", "Zeta")].receipt_count, 2)
        self.assertEqual([r["id"] for r in by_key[("Ann", "Zeta")].receipts], ["1", "3"])
        self.assertEqual(by_key[("Bob", "Alpha")].total_spent, 0.0)
        for customer in customers:
            self.assertEqual(customer.total_spent, sum(coerce_total(r["total"]) for r in customer.receipts))

    def test_sorted_by_store_name_stable_on_first_appearance(self):
        receipts = [
            _receipt("1", "Cid", "Beta", 1),
            _receipt("2", "Ann", "Alpha", 1),
            _receipt("3", "Bob", "Beta", 1),
            _receipt("4", "Abe", "Alpha", 1),
        ]
        keys = [c.key for c in aggregate_receipts(receipts)]
        self.assertEqual(keys, [("Ann", "Alpha"), ("Abe", "Alpha"), ("Cid", "Beta"), ("Bob", "Beta")])

    def test_missing_names_use_sentinels(self):
        customers = aggregate_receipts([{"id": "x", "total": 3}, {"id": "y", "customer_name": "", "total": 1}])
        self.assertEqual(len(customers), 1)
        self.assertEqual(customers[0].key, (UNKNOWN_CUSTOMER, NO_STORE_NAME))
        self.assertEqual(customers[0].receipt_count, 2)

    def test_separator_characters_do_not_collide(self):
        receipts = [_receipt("1", "A|B", "C", 1), _receipt("2", "A", "B|C", 1)]
        self.assertEqual(len(aggregate_receipts(receipts)), 2)

    def test_dict_round_trip(self):
        customer = aggregate_receipts([_receipt("1", "Ann", "Alpha", "4.75")])[0]
        data = customer.to_dict()
        self.assertEqual(data["key"], ["Ann", "Alpha"])
        self.assertEqual(CustomerAggregate.from_dict(data), customer)

    def test_empty_input(self):
        self.assertEqual(aggregate_receipts([]), [])


if __name__ == "__main__":
    unittest.main()
