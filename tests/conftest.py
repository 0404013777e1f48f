import hashlib
import os
from base64 import b64decode

import graphene
import httpx
import pytest
from graphene_file_upload.scalars import Upload
from starlette.applications import Starlette
from starlette.routing import Route
from starlette.testclient import TestClient
from starlette_graphene3 import GraphQLApp

from graphql_harness import GraphQLClient, HarnessConfig, Transport

FILES_DIR = os.path.join(os.path.dirname(__file__), "files")


class Episode(graphene.Enum):
    NEW_HOPE = 4
    EMPIRE = 5
    JEDI = 6


class Human(graphene.ObjectType):
    id = graphene.ID()
    name = graphene.String()
    appears_in = graphene.List(Episode)
    home_planet = graphene.String()


class NewHuman(graphene.InputObjectType):
    name = graphene.String(required=True)
    appears_in = graphene.List(graphene.NonNull(Episode), required=True)
    home_planet = graphene.String()


class StoredFile(graphene.ObjectType):
    filename = graphene.String()
    content_type = graphene.String()
    size = graphene.Int()
    sha256 = graphene.String()


def _stored_file(filename, content_type, content):
    return {
        "filename": filename,
        "content_type": content_type,
        "size": len(content),
        "sha256": hashlib.sha256(content).hexdigest(),
    }


class Query(graphene.ObjectType):
    human = graphene.Field(Human, id=graphene.String(required=True))
    whoami = graphene.String()

    def resolve_human(root, info, id):
        return {
            "id": id + "4",
            "name": "Luke",
            "appears_in": ["NEW_HOPE", "EMPIRE", "JEDI"],
            "home_planet": "Mars",
        }

    def resolve_whoami(root, info):
        return info.context["request"].headers.get("Authorization")


class CreateHuman(graphene.Mutation):
    class Arguments:
        new_human = NewHuman(required=True)

    Output = Human

    def mutate(root, info, new_human):
        return {
            "id": "1000",
            "name": new_human.name,
            "appears_in": new_human.appears_in,
            "home_planet": new_human.home_planet,
        }


class UploadFixture(graphene.Mutation):
    class Arguments:
        file = Upload(required=True)

    Output = StoredFile

    async def mutate(root, info, file):
        content = await file.read()
        return _stored_file(file.filename, file.content_type, content)


class UploadEncoded(graphene.Mutation):
    class Arguments:
        name = graphene.String(required=True)
        content = graphene.String(required=True)

    Output = StoredFile

    def mutate(root, info, name, content):
        return _stored_file(name, None, b64decode(content, validate=True))


class Mutation(graphene.ObjectType):
    create_human = CreateHuman.Field()
    upload_fixture = UploadFixture.Field()
    upload_encoded = UploadEncoded.Field()


@pytest.fixture
def schema():
    return graphene.Schema(query=Query, mutation=Mutation)


@pytest.fixture
def config():
    return HarnessConfig(host="testserver", port=80)


@pytest.fixture
def test_client(schema):
    app = Starlette(routes=[Route("/graphql", GraphQLApp(schema))])
    return TestClient(app)


@pytest.fixture
def transport(config, test_client):
    return Transport.from_config(config, client=test_client)


@pytest.fixture
def client(transport):
    return GraphQLClient(transport)


@pytest.fixture
def files():
    return {
        "png": os.path.join(FILES_DIR, "pixel.png"),
        "svg": os.path.join(FILES_DIR, "badge.svg"),
        "bin": os.path.join(FILES_DIR, "noise.bin"),
    }


@pytest.fixture
def mock_transport():
    def build(handler, endpoint="http://api.test/graphql"):
        return Transport(endpoint, client=httpx.Client(transport=httpx.MockTransport(handler)))

    return build
