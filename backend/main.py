import logging
import traceback
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from backend.config import DRY_RUN
from scaling.exceptions import InvalidScalingRequest, ServiceNotFoundError


class ScaleRequest(BaseModel):
    target_instances: int


class ThresholdOverrides(BaseModel):
    cpu: Optional[float] = None
    memory: Optional[float] = None
    response_time: Optional[float] = None
    error_rate: Optional[float] = None


class RulesUpdate(BaseModel):
    scale_up_thresholds: Optional[ThresholdOverrides] = None
    scale_down_thresholds: Optional[ThresholdOverrides] = None
    cooldown_period: Optional[float] = None
    scale_step_size: Optional[int] = None
    max_scale_up_steps: Optional[int] = None
    max_scale_down_steps: Optional[int] = None

    def overrides(self) -> Dict:
        data = {}
        for key, value in self.__dict__.items():
            if value is None:
                continue
            if isinstance(value, ThresholdOverrides):
                value = {k: v for k, v in value.__dict__.items() if v is not None}
            data[key] = value
        return data


def _raise_http(e: Exception, action: str):
    if isinstance(e, ServiceNotFoundError):
        logging.error(f"{action}: {e}")
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidScalingRequest, ValueError)):
        logging.error(f"Validation error: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    logging.error(f"{action} error: {e}")
    logging.error(traceback.format_exc())
    raise HTTPException(status_code=500, detail=f"Internal error: {str(e)}")


def create_app(orchestrator) -> FastAPI:
    """Administrative HTTP surface over a running orchestrator."""
    app = FastAPI(title="Hive Autoscaler")

    def scaler():
        return orchestrator.systems["scaler"]

    @app.get("/health")
    def health():
        return {"status": "ok" if orchestrator.is_active else "inactive", "dry_run": DRY_RUN}

    @app.get("/status")
    def status():
        return orchestrator.get_status()

    @app.get("/predictions")
    def predictions():
        try:
            return scaler().forecaster.predictions_as_dict()
        except Exception as e:
            _raise_http(e, "Predictions")

    @app.get("/history")
    def history(limit: int = 10):
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        return [event.to_dict() for event in scaler().history.recent(limit)]

    @app.post("/services/{service_id}/scale")
    def scale(service_id: str, request: ScaleRequest):
        """
        Manual scaling: validated against the service's bounds and executed
        immediately, regardless of cooldown.
        """
        try:
            event = orchestrator.manual_scale(service_id, request.target_instances)
        except Exception as e:
            _raise_http(e, "Manual scaling")
        if not event.success:
            raise HTTPException(status_code=502, detail=f"Provider rejected scaling: {event.error_message}")
        return event.to_dict()

    @app.post("/recovery")
    def recovery():
        """Retry every failed subsystem now, ignoring backoff and an exhausted attempt budget."""
        try:
            recovered = orchestrator.system_recovery()
        except Exception as e:
            _raise_http(e, "System recovery")
        return {"recovered": recovered, "systems": orchestrator.get_status()["systems"]}

    @app.patch("/services/{service_id}/rules")
    def update_rules(service_id: str, update: RulesUpdate):
        try:
            rules = orchestrator.set_scaling_rules(service_id, update.overrides())
        except Exception as e:
            _raise_http(e, "Rules update")
        return rules.to_dict()

    return app
