"""FastAPI routes for operating the catalog crawler."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import AnyHttpUrl, BaseModel, Field, model_validator

from ..errors import (
    AlreadyRunningError,
    ConfigLockedError,
    ConfigNotFoundError,
    DomainNotAllowedError,
    InvalidConfigError,
)
from ..extraction.strategies import build_strategy
from ..models import ConfigStatus, CrawlerConfig, CrawlerJob, Frequency, new_id, utcnow
from ..runtime import CrawlerRuntime
from ..scheduling import compute_next_crawl, next_cron_time
from ..security.api_keys import Role, require_roles

router = APIRouter()

any_role = require_roles(Role.ADMIN, Role.OPERATOR)
admin_only = require_roles(Role.ADMIN)


def get_runtime(request: Request) -> CrawlerRuntime:
    return request.app.state.runtime


class OptionsModel(BaseModel):
    follow_pagination: bool = True
    max_pages: Optional[int] = Field(None, ge=1, le=10_000)
    timeout_ms: Optional[int] = Field(None, ge=100, le=300_000)
    retry_attempts: Optional[int] = Field(None, ge=0, le=10)
    use_headless_browser: Optional[bool] = None


class ConfigCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    target_url: AnyHttpUrl
    selectors: Dict[str, Any] = Field(default_factory=dict)
    strategy: Literal["selector", "json_api"] = "selector"
    rate_limit: int = Field(60, ge=1, le=1000, description="Requests per minute against the target domain")
    frequency: Frequency = Frequency.DAILY
    cron_expression: Optional[str] = None
    supplier_id: Optional[str] = None
    owner: Optional[str] = None
    options: OptionsModel = Field(default_factory=OptionsModel)
    headers: Dict[str, str] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_schedule_and_selectors(self) -> "ConfigCreateRequest":
        if self.frequency == Frequency.CUSTOM:
            if not self.cron_expression:
                raise ValueError("cron_expression is required for custom frequency")
            next_cron_time(self.cron_expression, utcnow())
        build_strategy(self.strategy, self.selectors)
        return self


class ConfigUpdateRequest(BaseModel):
    """Fields left out of the body keep their current value."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    target_url: Optional[AnyHttpUrl] = None
    selectors: Optional[Dict[str, Any]] = None
    strategy: Optional[Literal["selector", "json_api"]] = None
    rate_limit: Optional[int] = Field(None, ge=1, le=1000)
    frequency: Optional[Frequency] = None
    cron_expression: Optional[str] = None
    status: Optional[ConfigStatus] = None
    supplier_id: Optional[str] = None
    owner: Optional[str] = None
    options: Optional[OptionsModel] = None
    headers: Optional[Dict[str, str]] = None
    cookies: Optional[Dict[str, str]] = None

    def changes(self) -> Dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        if self.target_url is not None:
            changes["target_url"] = str(self.target_url)
        return changes


class ConfigResponse(BaseModel):
    config_id: str
    name: str
    target_url: str
    selectors: Dict[str, Any]
    strategy: str
    rate_limit: int
    frequency: str
    cron_expression: Optional[str]
    status: str
    owner: Optional[str]
    supplier_id: Optional[str]
    options: Dict[str, Any]
    last_crawled: Optional[datetime]
    next_crawl: Optional[datetime]


class JobErrorModel(BaseModel):
    url: str
    message: str
    timestamp: datetime
    retry_count: int
    quarantined: bool
    error_class: str


class JobResponse(BaseModel):
    job_id: str
    config_id: str
    status: str
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    total_enqueued: int
    pages_processed: int
    failed_pages: int
    skipped_pages: int
    items_found: int
    records_found: int
    products_created: int
    products_updated: int
    progress: float
    success_rate: float
    errors: List[JobErrorModel]


class QuarantineResponse(BaseModel):
    config_id: str
    url: str
    failure_count: int
    first_failure: datetime
    last_failure: datetime
    last_error: str
    skip: bool


class QuarantineRequest(BaseModel):
    config_id: str
    url: str
    skip: bool = True


class ProxyRequest(BaseModel):
    address: str = Field(..., min_length=1)


class DomainRequest(BaseModel):
    domain: str = Field(..., min_length=1, max_length=255)
    allowed: bool = True
    notes: Optional[str] = None


class DomainUpdateRequest(BaseModel):
    allowed: Optional[bool] = None
    notes: Optional[str] = None


class DomainResponse(BaseModel):
    domain: str
    allowed: bool
    notes: Optional[str]
    updated_at: Optional[datetime]


class ProxyResponse(BaseModel):
    address: str
    consecutive_failures: int
    last_used: float
    disabled: bool


class RecommendationsResponse(BaseModel):
    job_id: str
    concurrency: int
    delay_ms: int
    hints: List[str]


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: datetime
    running_jobs: int


def _job_response(job: CrawlerJob) -> JobResponse:
    return JobResponse(**job.to_dict())


@router.post("/configs", response_model=ConfigResponse, status_code=status.HTTP_201_CREATED)
async def create_config(
    payload: ConfigCreateRequest,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> ConfigResponse:
    options = runtime.default_options()
    for key, value in payload.options.model_dump(exclude_none=True).items():
        setattr(options, key, value)
    config = CrawlerConfig(
        config_id=new_id(),
        name=payload.name,
        target_url=str(payload.target_url),
        selectors=payload.selectors,
        strategy=payload.strategy,
        rate_limit=payload.rate_limit,
        frequency=payload.frequency,
        cron_expression=payload.cron_expression,
        status=ConfigStatus.ACTIVE,
        owner=payload.owner,
        supplier_id=payload.supplier_id,
        options=options,
        headers=payload.headers,
        cookies=payload.cookies,
    )
    config.next_crawl = compute_next_crawl(config.frequency, None, config.cron_expression)
    await runtime.store.save_config(config)
    return ConfigResponse(**config.to_dict())


@router.get("/configs", response_model=List[ConfigResponse])
async def list_configs(
    active_only: bool = Query(False),
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> List[ConfigResponse]:
    return [ConfigResponse(**config.to_dict()) for config in await runtime.store.list_configs(active_only)]


@router.get("/configs/{config_id}", response_model=ConfigResponse)
async def get_config(
    config_id: str,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> ConfigResponse:
    config = await runtime.store.get_config(config_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Config not found")
    return ConfigResponse(**config.to_dict())


@router.patch("/configs/{config_id}", response_model=ConfigResponse)
async def update_config(
    config_id: str,
    payload: ConfigUpdateRequest,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> ConfigResponse:
    try:
        config = await runtime.update_config(config_id, payload.changes())
    except ConfigNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConfigLockedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except InvalidConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ConfigResponse(**config.to_dict())


@router.post("/configs/{config_id}/deactivate", response_model=ConfigResponse)
async def deactivate_config(
    config_id: str,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> ConfigResponse:
    config = await runtime.store.deactivate_config(config_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Config not found")
    return ConfigResponse(**config.to_dict())


@router.post("/configs/{config_id}/jobs", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_job(
    config_id: str,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> JobResponse:
    try:
        job = await runtime.manager.start_job(config_id)
    except ConfigNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except DomainNotAllowedError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _job_response(job)


@router.get("/jobs", response_model=List[JobResponse])
async def list_jobs(
    config_id: Optional[str] = Query(None),
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> List[JobResponse]:
    return [_job_response(job) for job in await runtime.manager.list_jobs(config_id)]


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> JobResponse:
    job = await runtime.manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.post("/jobs/{job_id}/stop", response_model=JobResponse)
async def stop_job(
    job_id: str,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> JobResponse:
    job = await runtime.manager.stop(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.get("/jobs/{job_id}/recommendations", response_model=RecommendationsResponse)
async def job_recommendations(
    job_id: str,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> RecommendationsResponse:
    if await runtime.manager.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return RecommendationsResponse(
        job_id=job_id,
        concurrency=await runtime.tuner.recommend_concurrency(job_id),
        delay_ms=await runtime.tuner.recommend_delay_ms(job_id),
        hints=await runtime.tuner.recommendations(job_id),
    )


@router.get("/quarantine", response_model=List[QuarantineResponse])
async def list_quarantine(
    config_id: Optional[str] = Query(None),
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> List[QuarantineResponse]:
    return [QuarantineResponse(**entry.to_dict()) for entry in await runtime.quarantine.list(config_id)]


@router.post("/quarantine", response_model=QuarantineResponse)
async def set_quarantine(
    payload: QuarantineRequest,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> QuarantineResponse:
    entry = await runtime.quarantine.set_skip(payload.config_id, payload.url, payload.skip)
    if entry is None:
        raise HTTPException(status_code=404, detail="URL is not quarantined")
    return QuarantineResponse(**entry.to_dict())


@router.delete("/quarantine", status_code=status.HTTP_204_NO_CONTENT)
async def remove_quarantine(
    config_id: str = Query(...),
    url: str = Query(...),
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> None:
    if not await runtime.quarantine.remove(config_id, url):
        raise HTTPException(status_code=404, detail="URL is not quarantined")


@router.get("/proxies", response_model=List[ProxyResponse])
async def list_proxies(
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> List[ProxyResponse]:
    return [ProxyResponse(**record) for record in runtime.proxy_pool.snapshot()]


@router.post("/proxies/enable", response_model=ProxyResponse)
async def enable_proxy(
    payload: ProxyRequest,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> ProxyResponse:
    if not await runtime.proxy_pool.enable(payload.address):
        raise HTTPException(status_code=404, detail="Unknown proxy")
    record = runtime.proxy_pool.proxies[payload.address]
    return ProxyResponse(**record.to_dict())


@router.post("/proxies", response_model=ProxyResponse, status_code=status.HTTP_201_CREATED)
async def add_proxy(
    payload: ProxyRequest,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> ProxyResponse:
    await runtime.proxy_pool.add(payload.address)
    return ProxyResponse(**runtime.proxy_pool.proxies[payload.address].to_dict())


@router.delete("/proxies", status_code=status.HTTP_204_NO_CONTENT)
async def remove_proxy(
    address: str = Query(...),
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> None:
    if not await runtime.proxy_pool.remove(address):
        raise HTTPException(status_code=404, detail="Unknown proxy")


@router.get("/domains", response_model=List[DomainResponse])
async def list_domains(
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(any_role),
) -> List[DomainResponse]:
    return [DomainResponse(**entry.to_dict()) for entry in await runtime.allowlist.list()]


@router.post("/domains", response_model=DomainResponse, status_code=status.HTTP_201_CREATED)
async def add_domain(
    payload: DomainRequest,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> DomainResponse:
    try:
        entry = await runtime.allowlist.set(payload.domain, payload.allowed, payload.notes)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return DomainResponse(**entry.to_dict())


@router.patch("/domains/{domain}", response_model=DomainResponse)
async def update_domain(
    domain: str,
    payload: DomainUpdateRequest,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> DomainResponse:
    entry = await runtime.allowlist.get(domain)
    if entry is None:
        raise HTTPException(status_code=404, detail="Domain not found")
    allowed = entry.allowed if payload.allowed is None else payload.allowed
    entry = await runtime.allowlist.set(domain, allowed, payload.notes)
    return DomainResponse(**entry.to_dict())


@router.delete("/domains/{domain}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_domain(
    domain: str,
    runtime: CrawlerRuntime = Depends(get_runtime),
    _: Role = Depends(admin_only),
) -> None:
    if not await runtime.allowlist.remove(domain):
        raise HTTPException(status_code=404, detail="Domain not found")


@router.get("/health", response_model=HealthResponse, include_in_schema=False)
async def health_check(runtime: CrawlerRuntime = Depends(get_runtime)) -> HealthResponse:
    return HealthResponse(timestamp=utcnow(), running_jobs=len(runtime.manager.running_jobs()))


__all__ = ["router"]
