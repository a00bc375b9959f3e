from pytest_archon import archrule


def test_ports_do_not_depend_on_adapters() -> None:
    """
    Ports (protocols) must not import their implementations or the pipeline.
    """
    (
        archrule("ports_layering")
        .match("reliable_pipeline.ports*")
        .should_not_import("reliable_pipeline.memory*")
        .should_not_import("reliable_pipeline.kafka*")
        .should_not_import("reliable_pipeline.idempotency*")
        .should_not_import("reliable_pipeline.pipeline*")
        .should_not_import("reliable_pipeline.dead_letter")
        .check("reliable_pipeline")
    )


def test_foundation_modules_are_independent() -> None:
    """
    Models, errors, config and retry policy are the lowest level.
    They must not import adapters, ports or the pipeline.
    """
    (
        archrule("foundation_isolation")
        .match("reliable_pipeline.models")
        .match("reliable_pipeline.exceptions")
        .match("reliable_pipeline.config")
        .match("reliable_pipeline.retry")
        .should_not_import("reliable_pipeline.ports*")
        .should_not_import("reliable_pipeline.memory*")
        .should_not_import("reliable_pipeline.kafka*")
        .should_not_import("reliable_pipeline.idempotency*")
        .should_not_import("reliable_pipeline.pipeline*")
        .check("reliable_pipeline")
    )


def test_chunking_is_self_contained() -> None:
    """
    Splitting and reassembly know nothing about delivery or dead-lettering.
    """
    (
        archrule("chunking_isolation")
        .match("reliable_pipeline.chunking*")
        .should_not_import("reliable_pipeline.pipeline*")
        .should_not_import("reliable_pipeline.dead_letter")
        .should_not_import("reliable_pipeline.memory*")
        .should_not_import("reliable_pipeline.kafka*")
        .check("reliable_pipeline")
    )


def test_adapters_do_not_depend_on_pipeline() -> None:
    """
    Transports and stores are plugged into the pipeline, never the reverse.
    """
    (
        archrule("adapters_isolation")
        .match("reliable_pipeline.memory*")
        .match("reliable_pipeline.kafka*")
        .match("reliable_pipeline.idempotency*")
        .should_not_import("reliable_pipeline.pipeline*")
        .check("reliable_pipeline")
    )


def test_pipeline_is_transport_agnostic() -> None:
    """
    The pipeline only talks to ports; concrete backends stay optional.
    """
    (
        archrule("pipeline_backend_independence")
        .match("reliable_pipeline.pipeline*")
        .should_not_import("reliable_pipeline.kafka*")
        .should_not_import("reliable_pipeline.idempotency*")
        .should_not_import("reliable_pipeline.memory*")
        .should_not_import("aiokafka*")
        .should_not_import("redis*")
        .should_not_import("sqlalchemy*")
        .check("reliable_pipeline")
    )
