# ciforge_workflow.py
# Example pipeline for a React app: lint, test across Node versions with a
# shared npm cache, build and upload the bundle, deploy from main only.
from __future__ import annotations
from ciforge import cache, job, sh, uses, wf

NPM_CACHE = cache(
    "npm-{os}-{matrix.node}-{hash}",
    "node_modules",
    hash_files=["package-lock.json"],
)


def workflow():
    return wf(
        job(
            "lint",
            sh("Install", "npm ci"),
            sh("ESLint", "npx eslint src --max-warnings 0"),
            sh("Prettier", "npx prettier --check src", continue_on_error=True),
        ),

        # one instance per Node version; the first failure cancels the rest
        job(
            "test",
            sh("Install", "npm ci", skip_on_cache_hit=True),
            sh("Unit tests", "npm test -- --watchAll=false", timeout=600),
            needs="lint",
            matrix={"node": [18, 20, 22]},
            fail_fast=True,
            cache=NPM_CACHE,
        ),

        job(
            "build",
            sh("Install", "npm ci"),
            sh("Build", "npm run build", env={"NODE_ENV": "production"}),
            sh("Version", 'echo "version=$(node -p "require(\'./package.json\').version")" >> "$CIFORGE_OUTPUT"'),
            uses("Upload bundle", "actions/upload-artifact@v4", name="web-build", path="build", retention_days=14),
            needs="test",
        ),

        job(
            "deploy",
            sh("Deploy", "./scripts/deploy.sh build"),
            needs="build",
            if_="github.ref_name == 'main' && event == 'push' && needs.build.outputs.version != ''",
        ),

        job(
            "notify-failure",
            sh("Notify", 'echo "pipeline failed on $CIFORGE_BRANCH"'),
            needs=["build"],
            if_="failure()",
        ),
    )
