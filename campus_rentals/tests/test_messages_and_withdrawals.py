import sys
import time
import unittest
from datetime import date, datetime
from unittest import mock

from marketplace_fixtures import FileDatabaseTestCase, MarketplaceTestCase
from sqlalchemy import select

from campus_rentals.db.session import SessionLocal
from campus_rentals.models.market_models import Item, Message, Rental, User, Withdrawal
from campus_rentals.scripts import settle_withdrawal as settle_script
from campus_rentals.services import message_service, withdrawal_service
from campus_rentals.services.errors import InvalidTransition
from campus_rentals.services.message_service import accept_offer
from campus_rentals.services.withdrawal_service import compute_balance, request_withdrawal, settle_withdrawal


class MessageAndOfferTests(MarketplaceTestCase):
    def send(self, headers, **payload):
        return self.client.post("/api/messages", json=payload, headers=headers)

    def test_conversations_group_by_counterpart_and_track_unread(self):
        owner, owner_headers, renter, renter_headers, item = self.campus_pair()

        self.assertEqual(self.send(renter_headers, receiverId=owner["id"], content="Hi!").status_code, 201)
        self.assertEqual(self.send(renter_headers, receiverId=owner["id"], content="Is the camera free?").status_code, 201)
        self.assertEqual(self.send(owner_headers, receiverId=renter["id"], content="Yes").status_code, 201)

        messages = self.client.get("/api/messages", headers=owner_headers).json()
        self.assertEqual([row["content"] for row in messages], ["Hi!", "Is the camera free?", "Yes"])

        conversations = self.client.get("/api/conversations", headers=owner_headers).json()
        self.assertEqual(len(conversations), 1)
        self.assertEqual(conversations[0]["counterpartId"], renter["id"])
        self.assertEqual(conversations[0]["messageCount"], 3)
        self.assertEqual(conversations[0]["unreadCount"], 2)
        self.assertEqual(conversations[0]["lastMessage"]["content"], "Yes")

        marked = self.client.post(f"/api/conversations/{renter['id']}/read", headers=owner_headers)
        self.assertEqual(marked.json(), {"updated": 2})
        self.assertEqual(self.client.get("/api/conversations", headers=owner_headers).json()[0]["unreadCount"], 0)

    def test_message_validation(self):
        owner, _, renter, renter_headers, item = self.campus_pair()

        self.assertEqual(self.send(renter_headers, receiverId=renter["id"], content="me").status_code, 400)
        self.assertEqual(self.send(renter_headers, receiverId=9999, content="hello?").status_code, 404)
        self.assertEqual(self.send(renter_headers, receiverId=owner["id"], content="   ").status_code, 400)
        self.assertEqual(self.send(renter_headers, receiverId=owner["id"], content="cheap drugs").status_code, 400)

    def test_offer_validation(self):
        owner, _, renter, renter_headers, item = self.campus_pair()
        _, other_headers = self.register("sam", "sam@state.edu")

        no_dates = self.send(renter_headers, receiverId=owner["id"], content="Offer", itemId=item["id"], offerPrice=800)
        self.assertEqual(no_dates.status_code, 400)

        zero = self.send(
            renter_headers,
            receiverId=owner["id"],
            content="Offer",
            itemId=item["id"],
            offerPrice=0,
            startDate="2027-08-01",
            endDate="2027-08-03",
        )
        self.assertEqual(zero.status_code, 400)

        wrong_receiver = self.send(
            other_headers,
            receiverId=renter["id"],
            content="Offer",
            itemId=item["id"],
            offerPrice=800,
            startDate="2027-08-01",
            endDate="2027-08-03",
        )
        self.assertEqual(wrong_receiver.status_code, 400)

    def test_accepted_offer_creates_pending_rental_at_offer_price(self):
        owner, owner_headers, renter, renter_headers, item = self.campus_pair()

        offer = self.send(
            renter_headers,
            receiverId=owner["id"],
            content="Would you take $8/day?",
            itemId=item["id"],
            offerPrice=800,
            startDate="2027-08-01T00:00:00.000Z",
            endDate="2027-08-03T00:00:00.000Z",
        )
        self.assertEqual(offer.status_code, 201, offer.text)
        self.assertEqual(offer.json()["offerStatus"], "pending")

        self.assertEqual(self.client.post(f"/api/messages/{offer.json()['id']}/accept", headers=renter_headers).status_code, 403)

        accepted = self.client.post(f"/api/messages/{offer.json()['id']}/accept", headers=owner_headers)
        self.assertEqual(accepted.status_code, 200, accepted.text)
        body = accepted.json()
        self.assertEqual(body["message"]["offerStatus"], "accepted")
        self.assertEqual(body["message"]["rentalId"], body["rental"]["id"])
        rental = body["rental"]
        self.assertEqual(rental["status"], "pending")
        self.assertEqual(rental["itemId"], item["id"])
        self.assertEqual(rental["renterId"], renter["id"])
        self.assertEqual((rental["startDate"], rental["endDate"]), ("2027-08-01", "2027-08-03"))
        self.assertEqual(rental["pricePerDay"], 800)
        self.assertEqual(rental["totalPrice"], 1600)

        self.assertEqual(self.client.post(f"/api/messages/{offer.json()['id']}/accept", headers=owner_headers).status_code, 409)
        self.assertEqual(self.client.post(f"/api/messages/{offer.json()['id']}/reject", headers=owner_headers).status_code, 409)

    def test_offer_on_blocked_dates_conflicts_and_stays_pending(self):
        owner, owner_headers, _, renter_headers, item = self.campus_pair()
        self.client.post(
            f"/api/items/{item['id']}/unavailable",
            json={"startDate": "2027-08-02", "endDate": "2027-08-02"},
            headers=owner_headers,
        )
        offer = self.send(
            renter_headers,
            receiverId=owner["id"],
            content="Offer",
            itemId=item["id"],
            offerPrice=800,
            startDate="2027-08-01",
            endDate="2027-08-03",
        ).json()

        self.assertEqual(self.client.post(f"/api/messages/{offer['id']}/accept", headers=owner_headers).status_code, 409)
        rejected = self.client.post(f"/api/messages/{offer['id']}/reject", headers=owner_headers)
        self.assertEqual(rejected.status_code, 200)
        self.assertEqual(rejected.json()["offerStatus"], "rejected")

    def offer(self, headers, receiver_id, item_id):
        return self.send(
            headers,
            receiverId=receiver_id,
            content="Offer",
            itemId=item_id,
            offerPrice=800,
            startDate="2027-08-01",
            endDate="2027-08-03",
        )

    def test_offers_require_a_verified_sender_who_can_see_the_item(self):
        owner, _, _, _, item = self.campus_pair()
        _, unverified_headers = self.register("mallory", "mallory@other.edu", verify=False)
        _, outsider_headers = self.register("nina", "nina@other.edu")
        _, classmate_headers = self.register("sam", "sam@state.edu", verify=False)

        self.assertEqual(self.offer(unverified_headers, owner["id"], item["id"]).status_code, 403)
        self.assertEqual(self.offer(classmate_headers, owner["id"], item["id"]).status_code, 403)

        cross_school = self.offer(outsider_headers, owner["id"], item["id"])
        self.assertEqual(cross_school.status_code, 404)
        self.assertEqual(cross_school.json(), {"detail": "Item not found"})

        self.assertEqual(self.client.get("/api/messages", headers=outsider_headers).json(), [])

    def test_accepting_rechecks_the_sender_and_the_listing(self):
        owner, owner_headers, renter, renter_headers, item = self.campus_pair()
        offer = self.offer(renter_headers, owner["id"], item["id"])
        self.assertEqual(offer.status_code, 201, offer.text)
        accept_url = f"/api/messages/{offer.json()['id']}/accept"

        with SessionLocal() as db:
            db.get(User, renter["id"]).IsVerified = False
            db.commit()
        self.assertEqual(self.client.post(accept_url, headers=owner_headers).status_code, 403)

        with SessionLocal() as db:
            db.get(User, renter["id"]).IsVerified = True
            db.commit()
        self.client.patch(f"/api/items/{item['id']}", json={"isAvailable": False}, headers=owner_headers)
        self.assertEqual(self.client.post(accept_url, headers=owner_headers).status_code, 409)

        rentals = self.client.get("/api/rentals", headers=owner_headers).json()
        self.assertEqual(rentals["incoming"], [])
        messages = self.client.get("/api/messages", headers=owner_headers).json()
        self.assertEqual(messages[0]["offerStatus"], "pending")
        self.assertIsNone(messages[0]["rentalId"])


class WithdrawalTests(MarketplaceTestCase):
    def earn(self):
        _, owner_headers, _, renter_headers, item = self.campus_pair()
        self.seed_rental(owner_headers, renter_headers, item["id"], "2027-06-01", "2027-06-05", status="approved")
        self.seed_rental(owner_headers, renter_headers, item["id"], "2027-06-10", "2027-06-12")
        return owner_headers

    def test_balance_counts_approved_and_completed_only(self):
        owner_headers = self.earn()
        balance = self.client.get("/api/balance", headers=owner_headers).json()
        self.assertEqual(balance, {"lifetimeEarnings": 6000, "withdrawn": 0, "available": 6000})

    def test_withdrawal_requests_respect_available_balance(self):
        owner_headers = self.earn()

        created = self.client.post("/api/withdrawals", json={"amount": 5000, "method": "Venmo"}, headers=owner_headers)
        self.assertEqual(created.status_code, 201, created.text)
        self.assertEqual(created.json()["status"], "pending")
        self.assertEqual(created.json()["method"], "venmo")

        too_much = self.client.post("/api/withdrawals", json={"amount": 2000, "method": "cashapp"}, headers=owner_headers)
        self.assertEqual(too_much.status_code, 400)
        bad_method = self.client.post("/api/withdrawals", json={"amount": 100, "method": "paypal"}, headers=owner_headers)
        self.assertEqual(bad_method.status_code, 400)

        listing = self.client.get("/api/withdrawals", headers=owner_headers).json()
        self.assertEqual(listing["balance"]["available"], 1000)
        self.assertEqual([row["amount"] for row in listing["withdrawals"]], [5000])

        with SessionLocal() as db:
            settle_withdrawal(db, created.json()["id"], "rejected", operator="finance")
            with self.assertRaises(InvalidTransition):
                settle_withdrawal(db, created.json()["id"], "paid")

        self.assertEqual(self.client.get("/api/balance", headers=owner_headers).json()["available"], 6000)


class ConcurrentRequestTests(FileDatabaseTestCase):
    """Two sessions race for the same balance or the same offer."""

    def setUp(self):
        super().setUp()
        self.owner_id = self.add_user("olivia")
        self.renter_id = self.add_user("ravi")
        with self.session_factory() as db:
            item = Item(
                OwnerID=self.owner_id,
                Title="Canon DSLR",
                Description="Camera body",
                Category="Electronics",
                PricePerDay=1000,
                IsAvailable=True,
            )
            db.add(item)
            db.commit()
            self.item_id = item.ItemID

    def slowed(self, module, name):
        """Patch ``module.name`` to pause after each call, widening the window between check and write."""
        original = getattr(module, name)

        def call(*args, **kwargs):
            result = original(*args, **kwargs)
            time.sleep(0.05)
            return result

        patcher = mock.patch.object(module, name, side_effect=call)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_concurrent_withdrawals_cannot_overdraw(self):
        with self.session_factory() as db:
            db.add(
                Rental(
                    ItemID=self.item_id,
                    RenterID=self.renter_id,
                    StartDate=date(2027, 6, 1),
                    EndDate=date(2027, 6, 2),
                    Status="approved",
                    PricePerDay=1000,
                    TotalPrice=1000,
                )
            )
            db.commit()
        self.slowed(withdrawal_service, "compute_balance")

        def withdraw(db):
            owner = db.get(User, self.owner_id)
            request_withdrawal(db, owner, {"amount": 1000, "method": "venmo"})

        self.assertEqual(self.race(withdraw, withdraw), ["ValidationError", "ok"])
        with self.session_factory() as db:
            balance = compute_balance(db, self.owner_id)
        self.assertEqual(balance, {"lifetimeEarnings": 1000, "withdrawn": 1000, "available": 0})

    def test_offer_accepted_twice_creates_one_rental(self):
        with self.session_factory() as db:
            offer = Message(
                SenderID=self.renter_id,
                ReceiverID=self.owner_id,
                Content="Would you take $8/day?",
                ItemID=self.item_id,
                OfferPrice=800,
                OfferStatus="pending",
                StartDate=date(2027, 8, 1),
                EndDate=date(2027, 8, 3),
                SentAt=datetime.now(),
                IsRead=False,
            )
            db.add(offer)
            db.commit()
            offer_id = offer.MessageID
        self.slowed(message_service, "create_occupancy")

        def accept(db):
            owner = db.get(User, self.owner_id)
            accept_offer(db, owner, offer_id)

        self.assertEqual(self.race(accept, accept), ["InvalidTransition", "ok"])
        with self.session_factory() as db:
            rentals = db.execute(select(Rental).where(Rental.ItemID == self.item_id)).scalars().all()
            offer = db.get(Message, offer_id)
            self.assertEqual(len(rentals), 1)
            self.assertEqual(offer.OfferStatus, "accepted")
            self.assertEqual(offer.RentalID, rentals[0].RentalID)


class SettleWithdrawalScriptTests(FileDatabaseTestCase):
    def setUp(self):
        super().setUp()
        user_id = self.add_user("olivia")
        with self.session_factory() as db:
            withdrawal = Withdrawal(UserID=user_id, Amount=2500, Method="venmo", Status="pending")
            db.add(withdrawal)
            db.commit()
            self.withdrawal_id = withdrawal.WithdrawalID

    def run_script(self, *args):
        argv = ["settle_withdrawal.py", "--db-url", self.db_url, *args]
        with mock.patch.object(sys, "argv", argv), mock.patch("builtins.print"):
            return settle_script.main()

    def test_marks_pending_withdrawal_paid_once(self):
        self.assertEqual(self.run_script("--withdrawal-id", str(self.withdrawal_id), "--status", "paid"), 0)
        with self.session_factory() as db:
            self.assertEqual(db.get(Withdrawal, self.withdrawal_id).Status, "paid")

        self.assertEqual(self.run_script("--withdrawal-id", str(self.withdrawal_id), "--status", "rejected"), 1)
        self.assertEqual(self.run_script("--withdrawal-id", "999", "--status", "paid"), 1)


if __name__ == "__main__":
    unittest.main()
