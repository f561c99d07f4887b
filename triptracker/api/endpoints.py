import logging
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from .. import persistence
from ..config import config
from ..errors import (
    InvalidSettingsError,
    PersistenceError,
    RecordingStateError,
    RemoteSyncError,
    SyncInProgressError,
    TripNotFoundError,
)
from ..schemas import LocationSample, SimulationRequest
from ..services import Services
from ..vehicle import load_vehicle_settings, reset_vehicle_settings, save_vehicle_settings, validate_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services

def get_db(services: Services = Depends(get_services)):
    """Dependency to get database session."""
    db = services.session_factory()
    try:
        yield db
    finally:
        db.close()

def _user(services: Services, user_id: Optional[str]) -> str:
    return user_id or services.user_id

# ==================== RECORDING ====================
# Recording handlers are async so every transition runs on the event loop
# thread, one at a time.

@router.get("/recording")
async def recording_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Get the current recording session."""
    return services.recorder.snapshot()

@router.post("/recording/start")
async def start_recording(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Start recording a new trip."""
    try:
        trip = services.recorder.start()
    except RecordingStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"message": "recording started", "trip": trip.to_dict()}

@router.post("/recording/points")
async def add_point(sample: LocationSample, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Feed one location sample into the active recording."""
    try:
        point = services.recorder.accept(sample)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if point is None:
        return {"accepted": False, "recording": services.recorder.snapshot()}
    return {"accepted": True, "point": point.to_dict(), "recording": services.recorder.snapshot()}

@router.post("/recording/skip")
async def skip_point(reason: str = Query("location unavailable"),
                     services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Report that the location source could not produce a sample."""
    services.recorder.skip(reason)
    return {"skipped": True, "recording": services.recorder.snapshot()}

@router.post("/recording/pause")
async def pause_recording(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {"paused": services.recorder.pause(), "recording": services.recorder.snapshot()}

@router.post("/recording/resume")
async def resume_recording(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {"resumed": services.recorder.resume(), "recording": services.recorder.snapshot()}

@router.post("/recording/stop")
async def stop_recording(background_tasks: BackgroundTasks,
                         services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Finish the active trip; a best-effort sync is scheduled afterwards."""
    try:
        trip = services.recorder.stop()
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if trip is None:
        return {"message": "not recording", "trip": None}

    if config.sync_enabled:
        background_tasks.add_task(_background_sync, services, trip.user_id)
    return {"message": "recording stopped", "trip": trip.to_dict()}

async def _background_sync(services: Services, user_id: str):
    try:
        await services.sync.sync_pending(user_id)
    except PersistenceError as e:
        logger.warning("Background sync failed: %s", e)

# ==================== TRIPS ====================

@router.get("/trips")
def list_trips(
    services: Services = Depends(get_services),
    db: Session = Depends(get_db),
    user_id: Optional[str] = Query(None, description="Defaults to the recorder's user"),
    limit: int = Query(config.api_default_limit, ge=1, le=config.api_max_limit, description="Number of trips to return"),
    offset: int = Query(0, ge=0, description="Number of trips to skip")
) -> List[Dict[str, Any]]:
    """Get trips, most recent first."""
    try:
        trips = persistence.get_trips(db, _user(services, user_id), limit, offset)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    return [trip.to_dict() for trip in trips]

@router.get("/trips/{trip_id}")
def get_trip(trip_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        trip = persistence.get_trip(db, trip_id)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    if trip is None:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")
    return trip.to_dict()

@router.delete("/trips/{trip_id}")
async def delete_trip(trip_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Delete a trip and its points."""
    current = services.recorder.current_trip
    if current is not None and current.id == trip_id:
        raise HTTPException(status_code=409, detail="Cannot delete the trip being recorded")

    try:
        with services.session_factory() as db:
            deleted = persistence.delete_trip(db, trip_id)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")
    services.sync.forget(trip_id)
    return {"deleted": trip_id}

@router.get("/trips/{trip_id}/points")
def get_trip_points(trip_id: str, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    """Get a trip's points in recording order."""
    try:
        if persistence.get_trip(db, trip_id) is None:
            raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")
        points = persistence.get_locations_by_trip(db, trip_id)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    return [point.to_dict() for point in points]

@router.get("/trips/{trip_id}/stats")
async def get_trip_stats(trip_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Trip statistics from the backend aggregation, or computed locally."""
    try:
        return await services.sync.trip_statistics(trip_id)
    except TripNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/statistics")
def get_statistics(
    services: Services = Depends(get_services),
    db: Session = Depends(get_db),
    user_id: Optional[str] = Query(None)
) -> Dict[str, Any]:
    """Totals across all of a user's trips."""
    try:
        return persistence.get_trip_statistics(db, _user(services, user_id))
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

# ==================== SETTINGS ====================

@router.get("/settings/vehicle")
def get_vehicle_settings(
    services: Services = Depends(get_services),
    db: Session = Depends(get_db),
    user_id: Optional[str] = Query(None)
) -> Dict[str, Any]:
    return load_vehicle_settings(db, _user(services, user_id)).model_dump()

@router.put("/settings/vehicle")
def put_vehicle_settings(
    payload: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db),
    user_id: Optional[str] = Query(None)
) -> Dict[str, Any]:
    """Replace the vehicle profile. Invalid values are rejected before saving."""
    try:
        settings = validate_settings(payload)
    except InvalidSettingsError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        return save_vehicle_settings(db, _user(services, user_id), settings).model_dump()
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/settings/vehicle/reset")
def reset_vehicle_settings_endpoint(
    services: Services = Depends(get_services),
    db: Session = Depends(get_db),
    user_id: Optional[str] = Query(None)
) -> Dict[str, Any]:
    try:
        return reset_vehicle_settings(db, _user(services, user_id)).model_dump()
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

# ==================== SYNC ====================

@router.get("/sync/config")
async def sync_config() -> Dict[str, Any]:
    """Remote backend settings in effect (the API key is never returned)."""
    return config.get_remote_config()

@router.get("/sync/pending")
def list_pending(
    services: Services = Depends(get_services),
    user_id: Optional[str] = Query(None)
) -> List[Dict[str, Any]]:
    try:
        trips = services.sync.pending_trips(_user(services, user_id))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return [trip.to_dict() for trip in trips]

@router.post("/sync")
async def sync_all(
    services: Services = Depends(get_services),
    user_id: Optional[str] = Query(None)
) -> Dict[str, Any]:
    """Push every pending trip; per-trip failures are reported, not raised."""
    try:
        report = await services.sync.sync_pending(_user(services, user_id))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return report.to_dict()

def _load_trip(services: Services, trip_id: str):
    try:
        with services.session_factory() as db:
            trip = persistence.get_trip(db, trip_id)
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")
    if trip is None:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")
    return trip

@router.post("/trips/{trip_id}/sync")
async def sync_one(trip_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    trip = _load_trip(services, trip_id)
    if trip.is_in_progress:
        raise HTTPException(status_code=409, detail="Cannot sync a trip that is still being recorded")
    try:
        trip = await services.sync.sync_trip(trip)
        uploaded = await services.sync.sync_trip_locations(trip_id)
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RemoteSyncError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"trip": trip.to_dict(), "locations_uploaded": uploaded,
            "sync": services.sync.sync_info(trip).to_dict()}

@router.get("/trips/{trip_id}/sync")
async def sync_status(trip_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    trip = _load_trip(services, trip_id)
    return services.sync.sync_info(trip).to_dict()

# ==================== REPLAY ====================

@router.post("/start_simulation")
async def api_start_simulation(background_tasks: BackgroundTasks,
                               request: Optional[SimulationRequest] = None,
                               services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Replay a recorded CSV track through the recorder."""
    if services.replayer.is_running():
        return {"message": "Simulation already running"}
    if not services.recorder.is_idle:
        raise HTTPException(status_code=409, detail="A trip is already being recorded")

    request = request or SimulationRequest()
    background_tasks.add_task(services.replayer.start, None, request.interval, request.track_id)
    return {"message": "simulation started"}

@router.post("/stop_simulation")
async def api_stop_simulation(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.replayer.stop()

@router.get("/simulation_status")
async def api_simulation_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {"is_running": services.replayer.is_running()}
