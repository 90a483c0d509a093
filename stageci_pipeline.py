# stageci_pipeline.py
# Container build/smoke/integration pipeline: image tagged per build,
# checked, exercised, then cleaned up no matter how the run ended.
from __future__ import annotations

from stageci.dsl import echo, ignore_failure, on_branch, on_change, pipeline, post, sh, stage
from stageci.step_workflows.docker import docker_build, docker_inspect, docker_rm, docker_rmi, docker_run

IMAGE = "${IMAGE_NAME}:${BUILD_NUMBER}"
CONTAINER = "${BUILD_TAG}-it"


def get_pipeline():
    return pipeline(
        "app-image",
        stage(
            "build",
            docker_build(IMAGE, ".", build_args={"BUILD_NUMBER": "${BUILD_NUMBER}"}, timeout=600),
        ),
        stage(
            "smoke",
            docker_inspect(IMAGE, "{{.Id}}", name="Image exists"),
            docker_run(IMAGE, "java", "-version", name="JVM starts"),
            ignore_failure(docker_run(IMAGE, "sh", "-c", "test -f /app/app.jar", name="Jar present")),
            timeout=120,
        ),
        stage(
            "integration",
            docker_run(IMAGE, container=CONTAINER, detach=True, ports=["8080"], name="Start app"),
            sh("Wait for health", "sleep 5 && docker inspect --format '{{.State.Running}}' " + CONTAINER),
            env={"IT_TIMEOUT": "60"},
            post=post(always=[docker_rm(CONTAINER)]),
            timeout=300,
        ),
        env={"IMAGE_NAME": "registry.local/app"},
        post=post(
            success=[
                on_branch(echo("Image ${IMAGE_NAME}:${BUILD_NUMBER} published as ${BUILD_TAG}"), name="branch notice"),
                on_change(echo("Change ${CHANGE_ID} verified"), name="change notice"),
            ],
            failure=[echo("Build ${BUILD_TAG} failed")],
            always=[docker_rmi(IMAGE)],
        ),
        timeout=1800,
        retention_count=10,
    )
