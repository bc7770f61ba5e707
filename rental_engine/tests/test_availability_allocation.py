import os
import sys
import unittest
from datetime import datetime
from pathlib import Path


os.environ.setdefault("RENTAL_ENGINE_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import func, select

from models.rental_models import Booking
from rental_fixtures import MONDAY, THURSDAY, assignment_count, book, make_session_factory, seed_catalog
from services.allocation_service import allocate, assign_line_item, select_units
from services.availability_service import (
    Availability,
    ComponentAvailability,
    available_units,
    check_cart_availability,
    unavailable_dates,
)
from services.booking_service import change_status, create_or_update_line_item, delete_booking, update_schedule
from services.errors import InsufficientInventory, TargetNotFound
from services.ledger_service import assigned_unit_ids, get_booking
from services.policy import BookingPolicy
from services.targets import BundleTarget, DateRange, ProductTarget


class SelectUnitsTests(unittest.TestCase):
    def _availability(self, components):
        return Availability(
            target=BundleTarget(1),
            date_range=DateRange.of(MONDAY, THURSDAY),
            found=True,
            components=tuple(ComponentAvailability(pid, req, tuple(ids)) for pid, req, ids in components),
        )

    def test_lowest_free_units_are_picked(self):
        availability = self._availability([(10, 2, [4, 2, 9, 7]), (20, 1, [3, 1])])
        self.assertEqual(select_units(availability, 1), {10: [2, 4], 20: [1]})

    def test_units_already_held_are_kept(self):
        availability = self._availability([(10, 2, [2, 4, 7, 9])])
        self.assertEqual(select_units(availability, 1, {10: [9, 7]}), {10: [7, 9]})
        self.assertEqual(select_units(availability, 1, {10: [9, 11]}), {10: [2, 9]})

    def test_first_short_component_is_the_bottleneck(self):
        availability = self._availability([(10, 2, [1, 2, 3, 4, 5]), (20, 1, [6, 7])])
        self.assertEqual(availability.available_count, 2)
        with self.assertRaises(InsufficientInventory) as ctx:
            select_units(availability, 3)
        self.assertEqual(ctx.exception.bottleneck_product_id, 10)
        self.assertEqual(ctx.exception.shortfall, 1)
        self.assertEqual(ctx.exception.available, 2)

    def test_missing_target_is_reported(self):
        availability = Availability(ProductTarget(99), DateRange.of(MONDAY, THURSDAY), found=False)
        with self.assertRaises(TargetNotFound):
            select_units(availability, 1)


class InventoryTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        self.catalog = seed_catalog(self.db)
        self.policy = BookingPolicy()
        self.week = DateRange.of(MONDAY, THURSDAY)

    def tearDown(self):
        self.db.close()

    def test_bundle_availability_is_limited_by_its_components(self):
        availability = available_units(self.db, BundleTarget(self.catalog.kit.BundleID), self.week)
        self.assertTrue(availability.found)
        self.assertEqual(availability.available_count, 2)

    def test_requesting_too_many_bundles_mutates_nothing(self):
        kit = BundleTarget(self.catalog.kit.BundleID)
        with self.assertRaises(InsufficientInventory) as ctx:
            book(self.db, self.policy, [(kit, 3)], MONDAY, THURSDAY)
        self.assertEqual(ctx.exception.shortfall, 1)
        self.assertEqual(ctx.exception.bottleneck_product_id, self.catalog.camera.ProductID)
        self.assertEqual(assignment_count(self.db), 0)
        self.assertEqual(self.db.execute(select(func.count()).select_from(Booking)).scalar(), 0)

    def test_two_bundles_take_all_tripods(self):
        kit = BundleTarget(self.catalog.kit.BundleID)
        booking = book(self.db, self.policy, [(kit, 2)], MONDAY, THURSDAY)
        item = booking.Items[0]
        self.assertEqual(len(assigned_unit_ids(item)), 6)
        tripods = available_units(self.db, ProductTarget(self.catalog.tripod.ProductID), self.week)
        self.assertEqual(tripods.available_count, 0)
        cameras = available_units(self.db, ProductTarget(self.catalog.camera.ProductID), self.week)
        self.assertEqual(cameras.available_unit_ids, [self.catalog.camera_units[4]])

    def test_overlap_is_inclusive_on_both_ends(self):
        drone = ProductTarget(self.catalog.drone.ProductID)
        book(self.db, self.policy, [(drone, 1)], MONDAY, THURSDAY)
        same_day = DateRange.of(THURSDAY, datetime(2026, 3, 7))
        next_day = DateRange.of(datetime(2026, 3, 6), datetime(2026, 3, 7))
        self.assertEqual(available_units(self.db, drone, same_day).available_count, 0)
        self.assertEqual(available_units(self.db, drone, next_day).available_count, 1)
        with self.assertRaises(InsufficientInventory):
            book(self.db, self.policy, [(drone, 1)], THURSDAY, datetime(2026, 3, 7))

    def test_cancelled_and_deleted_bookings_do_not_block(self):
        drone = ProductTarget(self.catalog.drone.ProductID)
        first = book(self.db, self.policy, [(drone, 1)], MONDAY, THURSDAY)
        change_status(self.db, self.policy, first.BookingID, "cancelled")
        self.assertEqual(available_units(self.db, drone, self.week).available_count, 1)

        second = book(self.db, self.policy, [(drone, 1)], MONDAY, THURSDAY)
        self.assertEqual(available_units(self.db, drone, self.week).available_count, 0)
        delete_booking(self.db, self.policy, second.BookingID)
        self.assertEqual(available_units(self.db, drone, self.week).available_count, 1)

    def test_reactivation_fails_when_units_were_taken(self):
        drone = ProductTarget(self.catalog.drone.ProductID)
        first = book(self.db, self.policy, [(drone, 1)], MONDAY, THURSDAY)
        change_status(self.db, self.policy, first.BookingID, "cancelled")
        book(self.db, self.policy, [(drone, 1)], MONDAY, THURSDAY)
        with self.assertRaises(InsufficientInventory):
            change_status(self.db, self.policy, first.BookingID, "paid")
        self.assertEqual(get_booking(self.db, first.BookingID).Status, "cancelled")

    def test_own_line_item_can_be_excluded(self):
        lens = ProductTarget(self.catalog.lens.ProductID)
        booking = book(self.db, self.policy, [(lens, 3)], MONDAY, THURSDAY)
        item_id = booking.Items[0].BookingItemID
        self.assertEqual(available_units(self.db, lens, self.week).available_count, 0)
        self.assertEqual(available_units(self.db, lens, self.week, [item_id]).available_count, 3)

    def test_disabled_and_retired_inventory_is_not_offered(self):
        lens = available_units(self.db, ProductTarget(self.catalog.lens.ProductID), self.week)
        self.assertEqual(lens.available_unit_ids, self.catalog.lens_units)
        self.assertNotIn(self.catalog.lens_disabled[0], lens.available_unit_ids)

        retired = available_units(self.db, ProductTarget(self.catalog.retired.ProductID), self.week)
        self.assertFalse(retired.found)
        self.assertEqual(retired.available_count, 0)
        with self.assertRaises(TargetNotFound):
            allocate(self.db, ProductTarget(self.catalog.retired.ProductID), 1, self.week)

    def test_allocation_is_idempotent(self):
        camera = ProductTarget(self.catalog.camera.ProductID)
        first = allocate(self.db, camera, 2, self.week)
        second = allocate(self.db, camera, 2, self.week)
        self.assertEqual(first, second)

        booking = book(self.db, self.policy, [(camera, 2)], MONDAY, THURSDAY)
        item = booking.Items[0]
        version = item.Version
        units = assign_line_item(self.db, item, self.week)
        self.assertEqual(units, self.catalog.camera_units[:2])
        self.assertEqual(item.Version, version)

    def test_growing_a_line_item_keeps_its_units(self):
        camera = ProductTarget(self.catalog.camera.ProductID)
        booking = book(self.db, self.policy, [(camera, 2)], MONDAY, THURSDAY)
        item = booking.Items[0]
        result = create_or_update_line_item(
            self.db,
            self.policy,
            booking.BookingID,
            camera,
            3,
            item_id=item.BookingItemID,
            expected_version=item.Version,
        )
        self.assertEqual(result["assignedUnitIDs"], self.catalog.camera_units[:3])
        self.assertEqual(get_booking(self.db, booking.BookingID).Items[0].Version, 2)

    def test_rescheduling_keeps_free_units_and_fills_lowest(self):
        camera = ProductTarget(self.catalog.camera.ProductID)
        units = self.catalog.camera_units
        holder = book(self.db, self.policy, [(camera, 1)], MONDAY, THURSDAY)
        self.assertEqual(assigned_unit_ids(holder.Items[0]), [units[0]])

        later = book(self.db, self.policy, [(camera, 2)], datetime(2026, 3, 10), datetime(2026, 3, 12))
        self.assertEqual(assigned_unit_ids(later.Items[0]), [units[0], units[1]])

        update_schedule(self.db, self.policy, later.BookingID, datetime(2026, 3, 4), datetime(2026, 3, 6))
        moved = get_booking(self.db, later.BookingID)
        self.assertEqual(assigned_unit_ids(moved.Items[0]), [units[1], units[2]])

    def test_unavailable_dates_cover_the_booked_days(self):
        drone = ProductTarget(self.catalog.drone.ProductID)
        book(self.db, self.policy, [(drone, 1)], MONDAY, THURSDAY)
        days = unavailable_dates(self.db, drone, DateRange.of(datetime(2026, 3, 1), datetime(2026, 3, 7)))
        self.assertEqual(days, ["2026-03-02", "2026-03-03", "2026-03-04", "2026-03-05"])

    def test_cart_check_reports_each_entry(self):
        result = check_cart_availability(
            self.db,
            [
                {
                    "target": BundleTarget(self.catalog.kit.BundleID),
                    "startDate": MONDAY,
                    "endDate": THURSDAY,
                    "quantity": 2,
                    "reference": "kit",
                },
                {
                    "target": ProductTarget(self.catalog.drone.ProductID),
                    "startDate": MONDAY,
                    "endDate": THURSDAY,
                    "quantity": 2,
                    "reference": "drone",
                },
                {
                    "target": ProductTarget(self.catalog.drone.ProductID),
                    "startDate": THURSDAY,
                    "endDate": MONDAY,
                    "quantity": 1,
                },
            ],
        )
        self.assertFalse(result["allAvailable"])
        self.assertEqual([entry["available"] for entry in result["items"]], [True, False, False])
        self.assertIn("error", result["items"][2])
        self.assertEqual(result["summary"]["availableItems"], 1)


if __name__ == "__main__":
    unittest.main()
