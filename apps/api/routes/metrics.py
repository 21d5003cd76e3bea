from fastapi import APIRouter, Response

from packages.metrics import snapshot

router = APIRouter()


@router.get("/metrics")
def metrics():
    counters, durations = snapshot()
    lines = [f"{name} {value}" for name, value in sorted(counters.items())]
    for name, value in sorted(durations.items()):
        # Labels stay on the base name: foo{stage="x"} -> foo_sum{stage="x"}
        base, brace, labels = name.partition("{")
        lines.append(f"{base}_sum{brace}{labels} {value:.6f}")
    return Response(content="\n".join(lines) + "\n", media_type="text/plain")
