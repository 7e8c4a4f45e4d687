"""Example of reconciling a plan against the in-memory cloud."""

from tierstack.orchestrator import ExecutionMode, ProvisioningEngine
from tierstack.plan import load_plan_file
from tierstack.provisioners import InMemoryCloud, build_memory_provisioners
from tierstack.tagging import TagManager
from tierstack.utils.errors import TierstackError

PLAN_FILE = 'examples/three-tier.yaml'


def print_progress(name, status, message):
    print(f"  {status.value:<12} {name}" + (f" ({message})" if message else ""))


def example_successful_run(plan, tag_manager):
    """Example: Concurrent run, then a second run that adopts everything."""
    print("=== Concurrent Run ===")

    cloud = InMemoryCloud()
    engine = ProvisioningEngine(
        provisioners=build_memory_provisioners(cloud),
        tag_manager=tag_manager,
        mode=ExecutionMode.CONCURRENT,
        max_workers=4,
        progress_callback=print_progress,
    )

    result = engine.run(plan)
    print(f"✓ {result.status.value}: {len(result.record.created())} created in {result.duration:.2f}s")

    print("\n=== Second Run ===")
    again = engine.run(plan)
    print(f"✓ {again.status.value}: {len(again.record.created())} created, "
          f"{len(again.record.names()) - len(again.record.created())} adopted")

    print("\n=== Destroy ===")
    destroyed = engine.destroy(plan)
    print(f"✓ Deleted {len(destroyed.torn_down)} resource(s), {len(destroyed.leftovers)} left behind")


def example_failed_run(plan, tag_manager):
    """Example: A failing create rolls back everything created before it."""
    print("\n=== Failure and Rollback ===")

    cloud = InMemoryCloud()
    cloud.fail('create', 'db')
    engine = ProvisioningEngine(build_memory_provisioners(cloud), tag_manager)

    result = engine.run(plan)
    print(f"Status: {result.status.value}")
    print(f"Rolled back: {', '.join(result.rollback.torn_down)}")

    try:
        result.raise_for_status()
    except TierstackError as e:
        print(e.to_user_message())


def main():
    """Run all examples."""
    print("Simulated Reconciliation Examples")
    print("=" * 60)

    plan = load_plan_file(PLAN_FILE)
    tag_manager = TagManager('shop', 'dev', {'owner': 'platform'})
    print(f"Plan '{plan.name}': {len(plan)} resource(s)\n")

    example_successful_run(plan, tag_manager)
    example_failed_run(plan, tag_manager)

    print("\n" + "=" * 60)
    print("Examples completed!")


if __name__ == '__main__':
    main()
