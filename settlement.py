"""Reward settlement.

Settlement credits coins for a confirmed reward event. Within one database
transaction it moves the balance, writes one ledger line and one
notification, and flips the idempotency guard:

- click path: ``clicks.reward_paid`` goes false -> true through a conditional
  UPDATE. If no row matched, the click was already paid and nothing is
  written.
- offer-completion path: the (user, offer) row in ``user_offers`` moves to
  ``completed`` through a conditional UPDATE or a unique-constrained INSERT.

Events are published only after the commit succeeds.
"""

from datetime import datetime

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from errors import AlreadyProcessedError, InvalidStateError, NotFoundError
from extensions import db
from fanout import publish
from ledger import append_notification, current_balance, get_user, post_entry
from models_clicks import CLICK_STATUS_INSTALLED, CLICK_STATUS_REJECTED, COMPLETION_STATUSES, Click
from models_offers import OFFER_STATE_COMPLETED, Offer, UserOffer
from models_users import TX_KIND_EARN


def get_offer(offer_id) -> Offer:
    try:
        offer = db.session.get(Offer, int(offer_id))
    except (TypeError, ValueError):
        offer = None
    if not offer:
        raise NotFoundError("Offer not found")
    return offer


def settle_click(click: Click, status: str = CLICK_STATUS_INSTALLED) -> int:
    """Credit the click's snapshotted reward exactly once. Returns the new balance."""
    if status not in COMPLETION_STATUSES:
        status = CLICK_STATUS_INSTALLED

    uid = click.user_uid
    click_pk = click.id
    tracking_id = click.tracking_id
    reward = int(click.reward_coins or 0)
    now = datetime.utcnow()

    try:
        res = db.session.execute(
            update(Click)
            .where(
                Click.id == click_pk,
                Click.reward_paid.is_(False),
                Click.status != CLICK_STATUS_REJECTED,
            )
            .values(reward_paid=True, rewarded_at=now, status=status, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            current = db.session.execute(select(Click.status).where(Click.id == click_pk)).scalar_one_or_none()
            if current == CLICK_STATUS_REJECTED:
                raise InvalidStateError("Click was rejected", trackingId=tracking_id)
            raise AlreadyProcessedError("Click already rewarded", trackingId=tracking_id)

        offer = db.session.get(Offer, click.offer_id)
        title = offer.title if offer else "offer"
        post_entry(
            uid,
            reward,
            TX_KIND_EARN,
            f"Completed offer: {title}",
            offer_id=click.offer_id,
            click_id=click_pk,
        )
        notification = append_notification(
            uid,
            "Offer Completed Successfully!",
            f'Your offer "{title}" has been verified. You earned {reward} coins!',
            "reward",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.expire(click)
    balance = current_balance(uid)
    current_app.logger.info(
        "Settled click %s for %s: +%s coins (balance %s)", tracking_id, uid, reward, balance
    )
    publish(uid, "offerCompleted", {"clickId": tracking_id, "rewardCoins": reward, "coins": balance})
    publish(uid, "notification", notification.to_dict())
    return balance


def _claim_completion(uid: str, offer_id: int) -> None:
    now = datetime.utcnow()
    res = db.session.execute(
        update(UserOffer)
        .where(
            UserOffer.user_uid == uid,
            UserOffer.offer_id == offer_id,
            UserOffer.status != OFFER_STATE_COMPLETED,
        )
        .values(status=OFFER_STATE_COMPLETED, note=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        return

    exists = db.session.execute(
        select(UserOffer.id).where(UserOffer.user_uid == uid, UserOffer.offer_id == offer_id)
    ).first()
    if exists:
        raise InvalidStateError("Offer already completed")

    db.session.add(UserOffer(user_uid=uid, offer_id=offer_id, status=OFFER_STATE_COMPLETED, updated_at=now))
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise InvalidStateError("Offer already completed")


def complete_offer(uid: str, offer_id) -> dict:
    """Direct "mark offer complete" settlement, idempotent per (user, offer)."""
    offer = get_offer(offer_id)
    if not offer.is_active:
        raise InvalidStateError("Offer is not active")
    user = get_user(uid)
    uid = user.uid
    reward = int(offer.coins or 0)

    try:
        _claim_completion(uid, offer.id)
        tx = post_entry(uid, reward, TX_KIND_EARN, f"Completed offer: {offer.title}", offer_id=offer.id)
        notification = append_notification(
            uid,
            "Offer Completed Successfully!",
            f'Congratulations! Your offer "{offer.title}" has been verified and completed. '
            f"You earned {reward} coins!",
            "reward",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    balance = current_balance(uid)
    current_app.logger.info("Completed offer %s for %s: +%s coins (balance %s)", offer.id, uid, reward, balance)
    payload = notification.to_dict()
    publish(uid, "offerCompleted", {"offerId": offer.id, "rewardCoins": reward, "coins": balance})
    publish(uid, "notification", payload)
    return {"coins": balance, "transaction": tx.to_dict(), "notification": payload}
