import pulumi

from config import load_config
from engine import PulumiEngine
from stacks import compose_stack


def main():
    # Load YAML configuration.
    config_data = load_config("config.yaml")

    try:
        graph = compose_stack(config_data, pulumi.get_stack())
    except Exception as e:
        pulumi.log.error(f"Failed to compose stack: {e}")
        raise

    try:
        PulumiEngine().materialize(graph)
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise


if __name__ == "__main__":
    main()
