import argparse
import json
import logging
import yaml # Requires PyYAML to be installed
import os

# --- Argument Parsing Helpers ---

def add_config_arg(parser: argparse.ArgumentParser):
    """Adds a --config argument (JSON or YAML file of option defaults)."""
    parser.add_argument(
        '--config',
        help="JSON or YAML file providing defaults for any option. Values given on the command line take precedence."
    )
    return parser

def add_verbosity_args(parser: argparse.ArgumentParser):
    """Adds mutually exclusive --verbose / --quiet logging switches."""
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--verbose', action='store_true', help="Log debug messages.")
    group.add_argument('--quiet', action='store_true', help="Only log warnings and errors.")
    return parser

def configure_logging(args: argparse.Namespace):
    """Sets the root logger level from the parsed --verbose / --quiet switches."""
    level = logging.INFO
    if getattr(args, 'verbose', False):
        level = logging.DEBUG
    elif getattr(args, 'quiet', False):
        level = logging.WARNING
    root = logging.getLogger()
    if not root.hasHandlers():
        logging.basicConfig(level=level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    root.setLevel(level)
    return level


# --- Configuration File Loading ---

def load_config_from_json_yaml(filepath: str) -> dict:
    """Loads parameters from a JSON or YAML configuration file."""
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    ext = os.path.splitext(filepath)[1].lower()
    config = {}
    with open(filepath, 'r') as f:
        if ext == '.json':
            config = json.load(f)
        elif ext in ['.yaml', '.yml']:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Error parsing YAML file {filepath}: {e}")
        else:
            raise ValueError(f"Unsupported configuration file format: {ext}. Use .json or .yaml.")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ValueError(f"Configuration file {filepath} must contain a mapping of option names to values.")
    return config

def parse_args_with_config(parser: argparse.ArgumentParser, argv=None) -> argparse.Namespace:
    """
    Parses `argv`, using the file named by --config as defaults.

    Config keys may be written with dashes or underscores. Unknown keys raise
    ValueError; options given explicitly on the command line always win.
    """
    args = parser.parse_args(argv)
    if not getattr(args, 'config', None):
        return args

    config = load_config_from_json_yaml(args.config)
    known = {action.dest for action in parser._actions}
    defaults = {}
    for key, value in config.items():
        dest = str(key).lstrip('-').replace('-', '_')
        if dest not in known or dest in ('config', 'help'):
            raise ValueError(f"Unknown option '{key}' in configuration file {args.config}.")
        defaults[dest] = value
    parser.set_defaults(**defaults)
    return parser.parse_args(argv)
