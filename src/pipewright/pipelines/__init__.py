"""Built-in pipeline definitions shipped as TOML resources."""
