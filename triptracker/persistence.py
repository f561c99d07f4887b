from datetime import datetime
from typing import Dict, List, Optional, Sequence
from sqlalchemy import func, or_, and_
from sqlalchemy.orm import Session
from .models import Trip, LocationPoint, utcnow

# ==================== TRIPS ====================

def insert_trip(db: Session, trip: Trip) -> Trip:
    """Insert a new trip."""
    db.add(trip)
    db.commit()
    db.refresh(trip)
    return trip

def get_trip(db: Session, trip_id: str) -> Optional[Trip]:
    """Get trip by ID."""
    return db.get(Trip, trip_id)

def get_trips(
    db: Session,
    user_id: str,
    limit: Optional[int] = None,
    offset: int = 0
) -> List[Trip]:
    """Get trips for a user, most recent first."""
    query = db.query(Trip).filter(
        Trip.user_id == user_id
    ).order_by(
        Trip.start_time.desc(), Trip.id
    ).offset(offset)

    if limit is not None:
        query = query.limit(limit)

    return query.all()

def get_active_trip(db: Session, user_id: str) -> Optional[Trip]:
    """Get the user's in-progress trip, if any."""
    return db.query(Trip).filter(
        Trip.user_id == user_id,
        Trip.end_time.is_(None)
    ).order_by(Trip.start_time.desc()).first()

def update_trip(db: Session, trip: Trip, now: Optional[datetime] = None) -> Trip:
    """Write a trip back, stamping it as locally modified."""
    now = now or utcnow()
    trip.updated_at = now
    trip.modified_at = now
    merged = db.merge(trip)
    db.commit()
    return merged

def delete_trip(db: Session, trip_id: str) -> bool:
    """Delete a trip together with all of its location points."""
    db.query(LocationPoint).filter(
        LocationPoint.trip_id == trip_id
    ).delete(synchronize_session=False)

    deleted = db.query(Trip).filter(Trip.id == trip_id).delete(synchronize_session=False)
    db.commit()
    return deleted > 0

def get_unsynced_trips(db: Session, user_id: str) -> List[Trip]:
    """Trips never synced or modified after their last sync, most recent first."""
    return db.query(Trip).filter(
        Trip.user_id == user_id,
        or_(
            Trip.synced_at.is_(None),
            and_(Trip.modified_at.isnot(None), Trip.modified_at > Trip.synced_at)
        )
    ).order_by(
        Trip.start_time.desc(), Trip.id
    ).all()

def mark_trip_synced(
    db: Session,
    trip_id: str,
    synced_at: datetime,
    pushed_modified_at: Optional[datetime] = None
) -> bool:
    """Set the sync timestamp of a trip.

    With pushed_modified_at the stamp is only written while the stored trip is
    still that version; a trip modified during the upload stays pending.
    """
    query = db.query(Trip).filter(Trip.id == trip_id)
    if pushed_modified_at is not None:
        query = query.filter(Trip.modified_at == pushed_modified_at)
    updated = query.update({Trip.synced_at: synced_at}, synchronize_session=False)
    db.commit()
    return updated > 0

def get_trips_with_unsynced_locations(db: Session, user_id: str) -> List[Trip]:
    """Finished trips that still have points waiting for upload, most recent first."""
    return db.query(Trip).join(
        LocationPoint, LocationPoint.trip_id == Trip.id
    ).filter(
        Trip.user_id == user_id,
        Trip.end_time.isnot(None),
        LocationPoint.synced_at.is_(None)
    ).distinct().order_by(
        Trip.start_time.desc(), Trip.id
    ).all()

# ==================== LOCATIONS ====================

def insert_location(db: Session, point: LocationPoint) -> LocationPoint:
    """Insert a single location point."""
    db.add(point)
    db.commit()
    db.refresh(point)
    return point

def insert_locations_batch(db: Session, points: Sequence[LocationPoint]):
    """Insert many location points in one transaction."""
    db.add_all(list(points))
    db.commit()

def get_locations_by_trip(db: Session, trip_id: str) -> List[LocationPoint]:
    """Get the points of a trip in recording order."""
    return db.query(LocationPoint).filter(
        LocationPoint.trip_id == trip_id
    ).order_by(
        LocationPoint.timestamp.asc(), LocationPoint.id.asc()
    ).all()

def get_unsynced_locations(db: Session, trip_id: str) -> List[LocationPoint]:
    """Get the not-yet-uploaded points of a trip in recording order."""
    return db.query(LocationPoint).filter(
        LocationPoint.trip_id == trip_id,
        LocationPoint.synced_at.is_(None)
    ).order_by(
        LocationPoint.timestamp.asc(), LocationPoint.id.asc()
    ).all()

def get_location_count(db: Session, trip_id: str) -> int:
    return db.query(func.count(LocationPoint.id)).filter(
        LocationPoint.trip_id == trip_id
    ).scalar() or 0

def delete_locations_by_trip(db: Session, trip_id: str) -> int:
    deleted = db.query(LocationPoint).filter(
        LocationPoint.trip_id == trip_id
    ).delete(synchronize_session=False)
    db.commit()
    return deleted

def mark_locations_synced(db: Session, point_ids: Sequence[int], synced_at: datetime) -> int:
    """Set the sync timestamp on exactly the given points."""
    if not point_ids:
        return 0
    updated = db.query(LocationPoint).filter(
        LocationPoint.id.in_(list(point_ids)),
        LocationPoint.synced_at.is_(None)
    ).update({LocationPoint.synced_at: synced_at}, synchronize_session=False)
    db.commit()
    return updated

# ==================== STATISTICS ====================

def get_trip_statistics(db: Session, user_id: str) -> Dict:
    """Get trip count, total distance and total duration for a user."""
    trips_count, total_distance, total_duration, total_fuel_cost = db.query(
        func.count(Trip.id),
        func.sum(Trip.distance),
        func.sum(Trip.duration),
        func.sum(Trip.fuel_cost)
    ).filter(Trip.user_id == user_id).one()

    return {
        'trips_count': trips_count or 0,
        'total_distance': float(total_distance or 0.0),
        'total_duration': int(total_duration or 0),
        'total_fuel_cost': float(total_fuel_cost or 0.0)
    }
