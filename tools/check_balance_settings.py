"""Quick smoke check for config-driven balance defaults.

This script is not a full unit-test. It's a quick sanity check that can run
locally to confirm config/config.json loads and yields usable defaults.
"""
from balancer import coordinator_settings as cs
from balancer.balance_settings import default_global_config, get_balance_settings


def run_check():
    print('Settings loaded:', isinstance(cs.SETTINGS, dict))
    settings = get_balance_settings()
    print('Class map:', f"T={settings.class_map.t}, CT={settings.class_map.ct}")

    # 1) target and split ratios must validate
    settings.target_ratios.validate()
    settings.split_ratios.validate()
    print('Ratios valid:', settings.target_ratios, settings.split_ratios)

    # 2) global config picks up tolerance and iteration cap
    config = default_global_config()
    print('Global config:', f"tolerance={config.tolerance}, max_iterations={config.max_iterations}")

    print('All balance settings checks passed')


if __name__ == '__main__':
    run_check()
