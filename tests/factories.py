import json

LODASH_REPO = "https://github.com/acme/web"


def package_json(deps: dict) -> str:
    return json.dumps({"name": "web", "version": "1.0.0", "dependencies": deps})
