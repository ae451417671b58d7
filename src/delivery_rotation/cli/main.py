"""
Delivery Rotation CLI

Command-line interface for operating the rotation service: provider registry,
request lifecycle, driver-contact checks, the timeout sweeper and the API
server.

Usage:
    delivery-rotation init --db deliveries.db
    delivery-rotation provider register --name "Kamau Transporters" --lat -1.28 --lon 36.82
    delivery-rotation request create --builder bld_1 --material cement --quantity 50 ...
    delivery-rotation request respond --id <request_id> --provider <provider_id> --action accept
    delivery-rotation sweep-timeouts
    delivery-rotation serve --port 8080 --metrics-port 9090
"""

import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from delivery_rotation.delivery.models import DeliveryRequest
from delivery_rotation.kernel.errors import DeliveryRotationError
from delivery_rotation.kernel.logging import configure_logging_from_env
from delivery_rotation.kernel.policy import RotationPolicy
from delivery_rotation.service import DeliveryRotation

# Logs go to stderr so stdout stays clean for --json output
configure_logging_from_env()

app = typer.Typer(
    name="delivery-rotation",
    help="Delivery provider rotation for the construction marketplace",
    add_completion=False,
)

# Sub-apps
provider_app = typer.Typer(help="Delivery provider registry commands")
request_app = typer.Typer(help="Delivery request lifecycle commands")

app.add_typer(provider_app, name="provider")
app.add_typer(request_app, name="request")

DEFAULT_DB = Path(os.getenv("DELIVERY_ROTATION_DB", ".delivery_rotation.db"))

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
PolicyOption = Annotated[
    Optional[Path], typer.Option("--policy", help="Rotation policy JSON file")
]


def get_rotation(db_path: Optional[Path] = None, policy_path: Optional[Path] = None) -> DeliveryRotation:
    """Open an existing database"""
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'delivery-rotation init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    policy = RotationPolicy.from_file(policy_path) if policy_path else None
    return DeliveryRotation(str(db), policy=policy)


def fail(error: DeliveryRotationError) -> None:
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(1)


def echo_request(request: DeliveryRequest) -> None:
    typer.echo(f"  Status: {request.status.value}")
    typer.echo(
        f"  Attempts: {len(request.attempted_providers)}/{request.max_rotation_attempts}"
    )
    contacted = request.contacted_entry()
    if contacted:
        typer.echo(
            f"  Contacted: {contacted.provider_id} "
            f"(position {contacted.queue_position}, respond by {contacted.timeout_at})"
        )
    if request.assigned_provider_id:
        typer.echo(f"  Assigned provider: {request.assigned_provider_id}")
    if request.delivery_phase:
        typer.echo(f"  Delivery phase: {request.delivery_phase.value}")


# Initialization command


@app.command()
def init(
    db: Annotated[
        Path,
        typer.Option(help="Database path"),
    ] = DEFAULT_DB,
) -> None:
    """Initialize a new delivery rotation database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    DeliveryRotation(str(db))
    typer.echo(f"✓ Initialized delivery rotation database: {db}")


# Provider commands


@provider_app.command("register")
def provider_register(
    name: Annotated[str, typer.Option("--name", help="Provider display name")],
    phone: Annotated[Optional[str], typer.Option("--phone", help="Driver phone")] = None,
    lat: Annotated[Optional[float], typer.Option("--lat", help="Current latitude")] = None,
    lon: Annotated[Optional[float], typer.Option("--lon", help="Current longitude")] = None,
    rating: Annotated[float, typer.Option("--rating", help="Rating 0-5")] = 0.0,
    provider_type: Annotated[
        str, typer.Option("--type", help="individual or company")
    ] = "individual",
    vehicle: Annotated[Optional[str], typer.Option("--vehicle", help="Vehicle type")] = None,
    provider_id: Annotated[
        Optional[str], typer.Option("--id", help="Existing marketplace id")
    ] = None,
    db: DbOption = None,
) -> None:
    """Register a delivery provider"""
    rotation = get_rotation(db)
    try:
        provider = rotation.register_provider(
            provider_name=name,
            phone=phone,
            latitude=lat,
            longitude=lon,
            rating=rating,
            provider_type=provider_type,
            vehicle_type=vehicle,
            provider_id=provider_id,
        )
    except DeliveryRotationError as e:
        fail(e)

    typer.echo(f"✓ Registered provider: {provider.provider_id}")
    typer.echo(f"  Name: {provider.provider_name}")
    if provider.location:
        typer.echo(f"  Location: {provider.location.latitude}, {provider.location.longitude}")


@provider_app.command("list")
def provider_list(
    active_only: Annotated[
        bool, typer.Option("--active-only", help="Only active providers")
    ] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    db: DbOption = None,
) -> None:
    """List delivery providers"""
    rotation = get_rotation(db)
    providers = rotation.list_providers(active_only=active_only)

    if as_json:
        # Phone numbers stay out of listings
        typer.echo(
            json.dumps(
                [p.model_dump(mode="json", exclude={"phone"}) for p in providers], indent=2
            )
        )
        return

    if not providers:
        typer.echo("No providers registered")
        return

    typer.echo(f"Providers ({len(providers)}):")
    for p in providers:
        state = "active" if p.is_active else "inactive"
        located = "located" if p.location else "no location"
        typer.echo(f"  {p.provider_id}: {p.provider_name} ({state}, {located}, rating {p.rating})")


@provider_app.command("deactivate")
def provider_deactivate(
    provider_id: Annotated[str, typer.Option("--id", help="Provider ID")],
    reason: Annotated[Optional[str], typer.Option("--reason", help="Why")] = None,
    db: DbOption = None,
) -> None:
    """Take a provider out of future queues"""
    rotation = get_rotation(db)
    try:
        rotation.set_provider_active(provider_id, False, reason=reason)
    except DeliveryRotationError as e:
        fail(e)
    typer.echo(f"✓ Deactivated provider: {provider_id}")


# Request commands


@request_app.command("create")
def request_create(
    builder: Annotated[str, typer.Option("--builder", help="Builder ID")],
    material: Annotated[str, typer.Option("--material", help="Material type")],
    quantity: Annotated[float, typer.Option("--quantity", help="Quantity")],
    pickup: Annotated[str, typer.Option("--pickup", help="Pickup address")],
    delivery: Annotated[str, typer.Option("--delivery", help="Delivery address")],
    unit: Annotated[str, typer.Option("--unit", help="Quantity unit")] = "units",
    pickup_lat: Annotated[Optional[float], typer.Option("--pickup-lat")] = None,
    pickup_lon: Annotated[Optional[float], typer.Option("--pickup-lon")] = None,
    delivery_lat: Annotated[Optional[float], typer.Option("--delivery-lat")] = None,
    delivery_lon: Annotated[Optional[float], typer.Option("--delivery-lon")] = None,
    max_attempts: Annotated[
        Optional[int], typer.Option("--max-attempts", help="Rotation attempt budget")
    ] = None,
    radius_km: Annotated[
        Optional[float], typer.Option("--radius-km", help="Search radius")
    ] = None,
    supplier: Annotated[Optional[str], typer.Option("--supplier", help="Supplier ID")] = None,
    manual: Annotated[
        bool, typer.Option("--manual", help="Disable automatic rotation")
    ] = False,
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """Create a delivery request and contact the first provider"""
    rotation = get_rotation(db, policy)
    try:
        request = rotation.create_delivery_request(
            builder_id=builder,
            pickup={"address": pickup, "latitude": pickup_lat, "longitude": pickup_lon},
            delivery={"address": delivery, "latitude": delivery_lat, "longitude": delivery_lon},
            materials={"material_type": material, "quantity": quantity, "unit": unit},
            max_attempts=max_attempts,
            radius_km=radius_km,
            supplier_id=supplier,
            auto_rotation_enabled=not manual,
        )
    except DeliveryRotationError as e:
        fail(e)

    typer.echo(f"✓ Created delivery request: {request.request_id}")
    if request.coordinates_defaulted:
        typer.echo("  ⚠️  Pickup coordinates missing - ranked around the city-centre fallback")
    echo_request(request)


@request_app.command("respond")
def request_respond(
    request_id: Annotated[str, typer.Option("--id", help="Request ID")],
    provider: Annotated[str, typer.Option("--provider", help="Responding provider ID")],
    action: Annotated[str, typer.Option("--action", help="accept or reject")],
    message: Annotated[Optional[str], typer.Option("--message", help="Message to builder")] = None,
    cost: Annotated[Optional[float], typer.Option("--cost", help="Estimated cost")] = None,
    hours: Annotated[
        Optional[float], typer.Option("--hours", help="Estimated duration in hours")
    ] = None,
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """Record a provider's accept or reject"""
    rotation = get_rotation(db, policy)
    try:
        request = rotation.submit_provider_response(
            request_id,
            provider,
            action,
            message=message,
            estimated_cost=cost,
            estimated_duration=hours,
        )
    except DeliveryRotationError as e:
        fail(e)

    typer.echo(f"✓ Recorded {action} from {provider}")
    echo_request(request)


@request_app.command("cancel")
def request_cancel(
    request_id: Annotated[str, typer.Option("--id", help="Request ID")],
    actor: Annotated[str, typer.Option("--actor", help="Cancelling actor ID")],
    role: Annotated[str, typer.Option("--role", help="Actor role")] = "builder",
    reason: Annotated[Optional[str], typer.Option("--reason", help="Why")] = None,
    db: DbOption = None,
) -> None:
    """Cancel a request that has no outcome yet"""
    rotation = get_rotation(db)
    try:
        rotation.cancel_delivery_request(request_id, actor, role, reason=reason)
    except DeliveryRotationError as e:
        fail(e)
    typer.echo(f"✓ Cancelled delivery request: {request_id}")


@request_app.command("advance")
def request_advance(
    request_id: Annotated[str, typer.Option("--id", help="Request ID")],
    actor: Annotated[str, typer.Option("--actor", help="Acting builder or admin ID")],
    role: Annotated[str, typer.Option("--role", help="Actor role")] = "builder",
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """Contact the next provider of a manually rotated request"""
    rotation = get_rotation(db, policy)
    try:
        request = rotation.advance_rotation(request_id, actor, role)
    except DeliveryRotationError as e:
        fail(e)
    typer.echo(f"✓ Advanced rotation for: {request_id}")
    echo_request(request)


@request_app.command("status")
def request_status(
    request_id: Annotated[str, typer.Option("--id", help="Request ID")],
    as_json: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    db: DbOption = None,
) -> None:
    """Show a request, its queue and its messages"""
    rotation = get_rotation(db)
    try:
        status = rotation.get_rotation_status(request_id)
        communications = rotation.get_communications(request_id)
    except DeliveryRotationError as e:
        fail(e)

    if as_json:
        data = status.model_dump(mode="json")
        data["communications"] = [c.model_dump(mode="json") for c in communications]
        typer.echo(json.dumps(data, indent=2))
        return

    request = status.request
    typer.echo(f"Delivery Request: {request.request_id}")
    typer.echo(f"  Builder: {request.builder_id}")
    typer.echo(f"  Materials: {request.materials.summary()}")
    typer.echo(f"  Route: {request.pickup.address} → {request.delivery.address}")
    echo_request(request)

    typer.echo(f"\nQueue ({len(status.queue)}):")
    for entry in status.queue:
        typer.echo(
            f"  {entry.queue_position}. {entry.provider_id} - {entry.status.value} "
            f"({entry.distance_km} km, score {entry.priority_score})"
        )

    typer.echo(f"\nCommunications ({len(communications)}):")
    for record in communications:
        typer.echo(f"  [{record.message_type}] → {record.recipient_id}: {record.content}")


# Driver contact & delivery phase


@app.command()
def contact(
    request_id: Annotated[str, typer.Option("--id", help="Request ID")],
    requester: Annotated[str, typer.Option("--requester", help="Requester ID")],
    role: Annotated[str, typer.Option("--role", help="Requester role")],
    justification: Annotated[
        str, typer.Option("--justification", help="Business justification")
    ],
    db: DbOption = None,
) -> None:
    """Ask for the assigned driver's phone (every call is audited)"""
    rotation = get_rotation(db)
    try:
        decision = rotation.can_disclose_driver_contact(request_id, requester, role, justification)
    except DeliveryRotationError as e:
        fail(e)

    if decision.allowed:
        typer.echo(f"✓ Driver: {decision.driver_name}")
        typer.echo(f"  Contact: {decision.driver_contact}")
    else:
        typer.echo(f"✗ Denied: {decision.reason}")
        typer.echo(f"  {decision.driver_contact}")
        raise typer.Exit(2)


@app.command()
def phase(
    request_id: Annotated[str, typer.Option("--id", help="Request ID")],
    to: Annotated[
        str, typer.Option("--to", help="in_progress, out_for_delivery or delivered")
    ],
    actor: Annotated[str, typer.Option("--actor", help="Assigned provider or admin ID")],
    role: Annotated[str, typer.Option("--role", help="Actor role")] = "delivery_provider",
    db: DbOption = None,
) -> None:
    """Move an accepted delivery to its next phase"""
    rotation = get_rotation(db)
    try:
        request = rotation.update_delivery_phase(request_id, to, actor, role)
    except DeliveryRotationError as e:
        fail(e)
    typer.echo(f"✓ Delivery {request_id} is now {request.delivery_phase.value}")


# Operations


@app.command("sweep-timeouts")
def sweep_timeouts(
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """Time out contacted providers past their deadline and rotate"""
    rotation = get_rotation(db, policy)
    result = rotation.sweep_timeouts()
    typer.echo(f"✓ {result.summary()}")
    for request_id in result.timed_out:
        typer.echo(f"  rotated: {request_id}")
    for request_id in result.skipped:
        typer.echo(f"  skipped: {request_id}")


@app.command()
def stats(
    db: DbOption = None,
) -> None:
    """Show store and registry counts"""
    rotation = get_rotation(db)
    typer.echo(json.dumps(rotation.stats(), indent=2))


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="API port")] = 8080,
    metrics_port: Annotated[
        Optional[int], typer.Option("--metrics-port", help="Expose Prometheus metrics")
    ] = None,
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """Run the HTTP API"""
    from delivery_rotation.api import initialize_api, run_api_server
    from delivery_rotation.kernel.metrics import start_metrics_server

    rotation = get_rotation(db, policy)
    initialize_api(rotation)
    if metrics_port:
        start_metrics_server(metrics_port)
        typer.echo(f"✓ Metrics on http://{host}:{metrics_port}/metrics")
    typer.echo(f"✓ Serving delivery rotation API on http://{host}:{port}")
    run_api_server(host=host, port=port)


if __name__ == "__main__":
    app()
