# gateci_pipeline.py
# Security pipeline for gateci itself: secret scan, tests against a database,
# static analysis, dependency audit, image scan and a DAST pass.
from __future__ import annotations

from gateci.dsl import build, http_probe, scan, service, sh, stage, tcp_probe, wf


def pipeline():
    return wf(
        "gateci-security",

        # Leaked credentials block everything downstream
        stage(
            "secrets-scan",
            scan("gitleaks detect --no-banner --report-format sarif --report-path \"$GATECI_REPORT_PATH\""),
            threshold="high",
        ),

        # Unit tests need a throwaway postgres
        stage(
            "test",
            sh("pip install -e '.[test]' && pytest -q", env={"DATABASE_URL": "postgresql://ci:ci@127.0.0.1:5432/ci"}),
            needs=["secrets-scan"],
            services=[
                service(
                    "postgres",
                    image="postgres:16",
                    ports=[5432],
                    env={"POSTGRES_USER": "ci", "POSTGRES_PASSWORD": "ci", "POSTGRES_DB": "ci"},
                    probe=tcp_probe(5432, retries=60),
                ),
            ],
        ),

        # Monitor first, enforce later: SAST only blocks on CRITICAL for now
        stage(
            "sast",
            scan("semgrep scan --config auto --sarif --output \"$GATECI_REPORT_PATH\" src/"),
            needs=["secrets-scan"],
            policy="continue",
        ),

        stage(
            "sca",
            scan(
                "osv-scanner --format sarif --output \"$GATECI_REPORT_PATH\" --recursive .",
                timeout=900,
            ),
            needs=["secrets-scan"],
            policy="continue",
            threshold="high",
        ),

        build("image")
        .run("docker build -t gateci:ci . && docker save gateci:ci -o \"$GATECI_OUTPUT_DIR/image.tar\"")
        .depends_on("test")
        .produces("image.tar")
        .timeout(1800)
        .build(),

        build("container-scan")
        .run("trivy image --input \"$GATECI_INPUT_DIR/image/image.tar\" --format sarif --output \"$GATECI_REPORT_PATH\"")
        .depends_on("image")
        .consumes("image:image.tar")
        .reports()
        .gate_at("high")
        .build(),

        # Baseline DAST against the status API
        stage(
            "dast",
            scan(
                "nuclei -u http://127.0.0.1:8000 -H \"Authorization: Bearer $API_TOKEN\" -sarif-export \"$GATECI_REPORT_PATH\"",
                secrets=["API_TOKEN"],
            ),
            needs=["test"],
            services=[
                service(
                    "api",
                    command="uvicorn gateci.cloud.app:app --port 8000",
                    ports=[8000],
                    probe=http_probe("http://127.0.0.1:8000/runs"),
                ),
            ],
            policy="continue",
            tolerate_failures=True,
        ),

        # Keep the bundle of reports even when a scan rejected the revision
        stage(
            "retain",
            sh("echo \"retained reports for $GATECI_REVISION\""),
            needs=["sast", "sca", "container-scan", "dast"],
            tolerate_failures=True,
        ),

        secrets=["API_TOKEN"],
        default_threshold="critical",
    )
