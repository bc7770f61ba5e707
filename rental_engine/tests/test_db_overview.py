import os
import sys
import unittest
from datetime import datetime
from pathlib import Path


os.environ.setdefault("RENTAL_ENGINE_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.rental_models import Booking, BookingItem, UnitAssignment
from rental_fixtures import MONDAY, THURSDAY, book, make_engine, make_session_factory, seed_catalog
from scripts.db_overview import run_column_checks, run_existence_checks, run_integrity_checks
from services.policy import BookingPolicy
from services.targets import BundleTarget, ProductTarget


class DbOverviewTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()
        self.catalog = seed_catalog(self.db)

    def tearDown(self):
        self.db.close()

    def _failed(self):
        return {row.name for row in run_integrity_checks(self.engine) if not row.ok}

    def test_schema_checks_pass_on_fresh_schema(self):
        self.assertTrue(all(row.ok for row in run_existence_checks(self.engine)))
        self.assertTrue(all(row.ok for row in run_column_checks(self.engine)))

    def test_engine_written_bookings_are_consistent(self):
        policy = BookingPolicy()
        book(self.db, policy, [(BundleTarget(self.catalog.kit.BundleID), 2)], MONDAY, THURSDAY)
        book(self.db, policy, [(ProductTarget(self.catalog.drone.ProductID), 1)], MONDAY, THURSDAY)
        self.assertEqual(self._failed(), set())

    def test_double_booked_unit_is_flagged(self):
        book(self.db, BookingPolicy(), [(ProductTarget(self.catalog.drone.ProductID), 1)], MONDAY, THURSDAY)
        intruder = Booking(
            BookingNumber="GPR99999",
            CustomerID=8,
            StartDate=THURSDAY,
            EndDate=datetime(2026, 3, 6),
            Duration=2,
            Status="paid",
        )
        item = BookingItem(ProductID=self.catalog.drone.ProductID, Quantity=1)
        item.Assignments.append(
            UnitAssignment(ProductID=self.catalog.drone.ProductID, UnitID=self.catalog.drone_units[0])
        )
        intruder.Items.append(item)
        self.db.add(intruder)
        self.db.commit()
        self.assertIn("unitassignments:double_booked_unit", self._failed())

    def test_assignment_count_mismatch_is_flagged(self):
        booking = book(self.db, BookingPolicy(), [(ProductTarget(self.catalog.lens.ProductID), 2)], MONDAY, THURSDAY)
        item = booking.Items[0]
        item.Assignments.remove(item.Assignments[0])
        self.db.commit()
        self.assertIn("bookingitems:assignment_count_mismatch", self._failed())


if __name__ == "__main__":
    unittest.main()
